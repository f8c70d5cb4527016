from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from fastapi import HTTPException
from pymongo.errors import PyMongoError

from catalog import (
    apply_inventory_rules,
    create_review,
    decrement_inventory,
    delete_product_cascade,
    recompute_product_rating,
    round_rating,
    update_review,
)
from config import UNLIMITED_INVENTORY


def insert_product(db, **fields):
    doc = {"title": "Kit", "status": "live", "manage_inventory": True, "inventory": 3, "in_stock": True,
           "avg_rating": 0, "total_ratings": 0, **fields}
    doc["_id"] = db["product"].insert_one(doc).inserted_id
    return doc


@pytest.mark.parametrize("total,count,expected", [
    (0, 0, 0.0),
    (5, 1, 5.0),
    (8, 2, 4.0),
    (9, 2, 4.5),
    (13, 3, 4.3),
    (14, 3, 4.7),
    (17, 4, 4.3),
    (11, 4, 2.8),
])
def test_round_rating_half_up(total, count, expected):
    assert round_rating(total, count) == expected


def test_recompute_matches_review_set(db):
    product = insert_product(db)
    pid = str(product["_id"])
    for tester, rating in [("a", 5), ("b", 4), ("c", 4)]:
        db["review"].insert_one({"product": pid, "tester": tester, "rating": rating})
    db["review"].insert_one({"product": "other", "tester": "a", "rating": 1})

    assert recompute_product_rating(db, pid) == {"avg_rating": 4.3, "total_ratings": 3}
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["avg_rating"] == 4.3
    assert stored["total_ratings"] == 3


def test_recompute_with_no_reviews_resets_to_zero(db):
    product = insert_product(db, avg_rating=3.5, total_ratings=7)
    recompute_product_rating(db, str(product["_id"]))
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["avg_rating"], stored["total_ratings"]) == (0, 0)


def test_recompute_failure_is_swallowed():
    broken = MagicMock()
    broken.__getitem__.return_value.aggregate.side_effect = PyMongoError("down")
    assert recompute_product_rating(broken, str(ObjectId())) is None


def test_inventory_rules_on_create():
    assert apply_inventory_rules({"manage_inventory": False, "inventory": 2}) == {
        "manage_inventory": False, "inventory": UNLIMITED_INVENTORY, "in_stock": True,
    }
    assert apply_inventory_rules({"inventory": 0})["in_stock"] is False
    assert apply_inventory_rules({"inventory": 4})["in_stock"] is True


def test_inventory_rules_on_update_use_stored_values():
    current = {"manage_inventory": True, "inventory": 0, "in_stock": True}
    assert apply_inventory_rules({"title": "x"}, current) == {"title": "x", "inventory": 0, "in_stock": False}

    unmanaged = {"manage_inventory": False, "inventory": UNLIMITED_INVENTORY, "in_stock": True}
    changes = apply_inventory_rules({"manage_inventory": True, "inventory": 5}, unmanaged)
    assert changes["inventory"] == 5 and changes["in_stock"] is True

    kept = apply_inventory_rules({"in_stock": False}, unmanaged)
    assert kept == {"in_stock": False, "inventory": UNLIMITED_INVENTORY}


def test_decrement_floors_at_zero(db):
    product = insert_product(db, inventory=3)
    after = decrement_inventory(db, product, 2)
    assert (after["inventory"], after["in_stock"]) == (1, True)
    after = decrement_inventory(db, after, 5)
    assert (after["inventory"], after["in_stock"]) == (0, False)
    after = decrement_inventory(db, after, 1)
    assert (after["inventory"], after["in_stock"]) == (0, False)


def test_decrement_exact_stock(db):
    product = insert_product(db, inventory=2)
    after = decrement_inventory(db, product, 2)
    assert (after["inventory"], after["in_stock"]) == (0, False)


def test_decrement_unmanaged_is_noop(db):
    product = insert_product(db, manage_inventory=False, inventory=UNLIMITED_INVENTORY)
    assert decrement_inventory(db, product, 10) is product
    assert db["product"].find_one({"_id": product["_id"]})["inventory"] == UNLIMITED_INVENTORY


def test_decrement_missing_product_returns_none(db):
    product = insert_product(db)
    db["product"].delete_one({"_id": product["_id"]})
    assert decrement_inventory(db, product, 1) is None


def test_cascade_removes_all_reviews(db):
    product = insert_product(db)
    pid = str(product["_id"])
    db["review"].insert_many([{"product": pid, "tester": t, "rating": 3} for t in "abc"])
    db["review"].insert_one({"product": "other", "tester": "a", "rating": 3})

    assert delete_product_cascade(db, product) == 3
    assert db["review"].count_documents({"product": pid}) == 0
    assert db["review"].count_documents({}) == 1
    assert db["product"].find_one({"_id": product["_id"]}) is None


def test_create_review_conflicts(db):
    product = insert_product(db)
    create_review(db, product, "tester-1", {"rating": 4, "text": "good"})
    with pytest.raises(HTTPException) as exc:
        create_review(db, product, "tester-1", {"rating": 2, "text": "again"})
    assert exc.value.status_code == 409
    assert db["review"].count_documents({"product": str(product["_id"])}) == 1

    closed = insert_product(db, status="closed")
    with pytest.raises(HTTPException) as exc:
        create_review(db, closed, "tester-1", {"rating": 4, "text": "late"})
    assert exc.value.status_code == 409


def test_update_review_rating_refreshes_aggregate(db):
    product = insert_product(db)
    review = create_review(db, product, "tester-1", {"rating": 2, "text": "meh"})
    update_review(db, review, {"rating": 5})
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["avg_rating"], stored["total_ratings"]) == (5.0, 1)
