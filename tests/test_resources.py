"""Tests for the circulation resources."""

import pytest
from fastmcp.exceptions import ResourceError

from library_circulation.config import reset_config
from library_circulation.resources import all_resources
from library_circulation.resources.circulation import (
    get_book_queue_handler,
    get_circulation_stats_handler,
    get_user_loans_handler,
    get_user_notifications_handler,
)
from library_circulation.tools.circulation import (
    borrow_book_handler,
    reserve_book_handler,
    return_loan_handler,
)


@pytest.fixture(autouse=True)
def resource_environment(db_manager, test_db_path, clean_env, monkeypatch):
    monkeypatch.setenv("LIBRARY_DATABASE_PATH", str(test_db_path))
    reset_config()
    yield
    reset_config()


@pytest.fixture
async def waitlisted_book(make_book):
    """A single copy out with alice and two users waiting for it."""
    book = make_book("book_queue001", total_copies=1, title="Long Wait")
    borrowed = await borrow_book_handler({"user_id": "user_alice", "book_id": book.id})
    await reserve_book_handler({"user_id": "user_bob", "book_id": book.id})
    await reserve_book_handler({"user_id": "user_carol", "book_id": book.id})
    return book, borrowed["data"]["loan"]["id"]


class TestBookQueueResource:
    async def test_queue_in_order(self, waitlisted_book):
        book, _ = waitlisted_book

        result = await get_book_queue_handler(book.id)

        assert result["book_id"] == book.id
        assert result["available_copies"] == 0
        assert result["queue_length"] == 2
        assert [(r["user_id"], r["priority"]) for r in result["queue"]] == [
            ("user_bob", 1),
            ("user_carol", 2),
        ]

    async def test_queue_moves_up_after_return(self, waitlisted_book):
        book, loan_id = waitlisted_book
        await return_loan_handler({"user_id": "user_alice", "loan_id": loan_id})

        result = await get_book_queue_handler(book.id)

        assert [(r["user_id"], r["priority"]) for r in result["queue"]] == [("user_carol", 1)]

    async def test_unknown_book(self):
        with pytest.raises(ResourceError, match="Book not found"):
            await get_book_queue_handler("book_missing001")


class TestUserResources:
    async def test_user_loans(self, waitlisted_book):
        book, loan_id = waitlisted_book

        result = await get_user_loans_handler("user_alice")

        assert result["user_id"] == "user_alice"
        assert result["total"] == 1
        assert result["open_loans"] == 1
        assert result["overdue_loans"] == 0
        assert result["outstanding_fines"] == 0.0
        assert result["loans"][0]["id"] == loan_id
        assert result["loans"][0]["book_id"] == book.id

    async def test_user_loan_totals_span_every_page(self, make_book, monkeypatch):
        monkeypatch.setattr("library_circulation.resources.circulation.LOANS_PAGE_SIZE", 1)
        for book_id in ("book_paged001", "book_paged002"):
            make_book(book_id)
            await borrow_book_handler({"user_id": "user_alice", "book_id": book_id})

        result = await get_user_loans_handler("user_alice")

        assert len(result["loans"]) == 1
        assert result["total"] == 2
        assert result["open_loans"] == 2
        assert result["overdue_loans"] == 0

    async def test_user_without_loans(self):
        result = await get_user_loans_handler("user_nobody")

        assert result["total"] == 0
        assert result["loans"] == []

    async def test_notifications_after_fulfillment(self, waitlisted_book):
        _, loan_id = waitlisted_book
        await return_loan_handler({"user_id": "user_alice", "loan_id": loan_id})

        result = await get_user_notifications_handler("user_bob")

        assert result["unread_count"] == 1
        [notification] = result["notifications"]
        assert notification["type"] == "reservation_available"
        assert "Long Wait" in notification["message"]

        assert (await get_user_notifications_handler("user_carol"))["notifications"] == []


async def test_circulation_stats(waitlisted_book):
    result = await get_circulation_stats_handler()

    assert "timestamp" in result
    assert result["loans"]["total_loans"] == 1
    assert result["reservations"]["active"] == 2
    assert result["policy"]["max_renewals"] == 2
    assert result["policy"]["pickup_window_days"] == 3


def test_every_resource_is_registered():
    uris = {resource.get("uri_template") or resource["uri"] for resource in all_resources}

    assert uris == {
        "library://books/{book_id}/queue",
        "library://users/{user_id}/loans",
        "library://users/{user_id}/notifications",
        "library://circulation/stats",
    }
