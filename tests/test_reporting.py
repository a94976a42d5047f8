from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_category, make_product, make_user
from database import create_document, parse_object_id
from reporting import (
    dashboard_stats,
    product_filters,
    rating_distribution,
    recalculate_product_rating,
    review_overview,
    round_rating,
    top_products,
)


def _order(db, items, total, user_id=None, customer_name="Guest", created_at=None):
    data = {
        "customer_info": {"name": customer_name, "email": "guest@example.com", "phone": "1"},
        "user_id": user_id,
        "items": items,
        "shipping_address": {"street": "s", "city": "c", "state": "st", "zip_code": "1", "country": "US"},
        "payment_method": "cash_on_delivery",
        "payment_status": "pending",
        "status": "pending",
        "total_amount": total,
        "shipping_cost": 0,
        "tax": 0,
    }
    if created_at:
        data["created_at"] = created_at
    return create_document("order", data, db)


def _review(db, product_id, rating, status="approved", user_id=None):
    return create_document("review", {
        "product_id": product_id,
        "user_id": user_id or "0" * 24,
        "rating": rating,
        "comment": "A perfectly fine comment",
        "status": status,
        "helpful": 0,
    }, db)


def _user_ids(n):
    return [f"{i:024x}" for i in range(1, n + 1)]


class TestDashboard:
    def test_empty_store(self, db):
        stats = dashboard_stats(db)

        assert stats["total_sales"] == 0
        assert stats["total_orders"] == 0
        assert stats["total_customers"] == 0
        assert stats["recent_orders"] == []
        assert stats["top_products"] == []

    def test_totals_and_customers(self, db, product):
        make_user(db)
        make_user(db, name="Bob", email="bob@example.com")
        _order(db, [{"product_id": product, "quantity": 1, "price": 10.0}], 10.0)
        _order(db, [{"product_id": product, "quantity": 3, "price": 5.0}], 15.5)

        stats = dashboard_stats(db)

        assert stats["total_sales"] == pytest.approx(25.5)
        assert stats["total_orders"] == 2
        assert stats["total_customers"] == 2

    def test_recent_orders_are_newest_five(self, db, product):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ids = [
            _order(db, [{"product_id": product, "quantity": 1, "price": 1.0}], 1.0,
                   customer_name=f"Buyer {i}", created_at=base + timedelta(hours=i))
            for i in range(7)
        ]

        recent = dashboard_stats(db)["recent_orders"]

        assert [o["id"] for o in recent] == list(reversed(ids))[:5]
        assert recent[0]["customer"] == {"name": "Buyer 6", "email": "guest@example.com"}
        assert recent[0]["items"][0]["product"]["name"] == "Runner"

    def test_recent_order_customer_prefers_user(self, db, product):
        user_id = make_user(db, name="Alice", email="alice@example.com")
        _order(db, [{"product_id": product, "quantity": 1, "price": 1.0}], 1.0, user_id=user_id)

        recent = dashboard_stats(db)["recent_orders"]

        assert recent[0]["customer"] == {"name": "Alice", "email": "alice@example.com"}

    def test_route_uses_camel_case_keys(self, client, db, admin, customer, product):
        _order(db, [{"product_id": product, "quantity": 2, "price": 10.0}], 20.0)

        response = client.get("/api/admin/dashboard-stats", headers=admin["headers"])

        body = response.json()
        assert response.status_code == 200
        assert {"totalSales", "totalOrders", "totalCustomers", "recentOrders", "topProducts"} <= set(body)
        assert "total_sales" not in body
        assert (body["totalSales"], body["totalOrders"], body["totalCustomers"]) == (20.0, 1, 1)
        assert body["topProducts"][0] == {"productId": product, "name": "Runner", "sold": 2, "revenue": 20.0}
        assert len(body["recentOrders"]) == 1

    def test_route_is_admin_only(self, client, customer):
        assert client.get("/api/admin/dashboard-stats", headers=customer["headers"]).status_code == 403


class TestTopProducts:
    def test_ranked_by_quantity_with_revenue(self, db):
        category = make_category(db)
        shoe = make_product(db, category, name="Shoe")
        hat = make_product(db, category, name="Hat")
        _order(db, [{"product_id": shoe, "quantity": 1, "price": 100.0},
                    {"product_id": hat, "quantity": 2, "price": 20.0}], 140.0)
        _order(db, [{"product_id": hat, "quantity": 3, "price": 25.0}], 75.0)

        ranked = top_products(db)

        assert [p["name"] for p in ranked] == ["Hat", "Shoe"]
        assert ranked[0]["sold"] == 5
        assert ranked[0]["revenue"] == pytest.approx(2 * 20.0 + 3 * 25.0)
        assert ranked[1] == {"product_id": shoe, "name": "Shoe", "sold": 1, "revenue": 100.0}

    def test_missing_product_is_unknown(self, db):
        _order(db, [{"product_id": "f" * 24, "quantity": 2, "price": 5.0},
                    {"product_id": "legacy-sku", "quantity": 1, "price": 5.0}], 15.0)

        names = {p["product_id"]: p["name"] for p in top_products(db)}

        assert names == {"f" * 24: "Unknown", "legacy-sku": "Unknown"}

    def test_limited_to_five(self, db):
        category = make_category(db)
        for i in range(7):
            pid = make_product(db, category, name=f"P{i}")
            _order(db, [{"product_id": pid, "quantity": i + 1, "price": 1.0}], i + 1.0)

        ranked = top_products(db)

        assert len(ranked) == 5
        assert ranked[0]["name"] == "P6"


class TestRatings:
    @pytest.mark.parametrize("value, expected", [(4.25, 4.3), (4.24, 4.2), (3.0, 3.0), (4.666, 4.7)])
    def test_round_rating(self, value, expected):
        assert round_rating(value) == expected

    def test_only_approved_reviews_count(self, db, product):
        users = _user_ids(3)
        _review(db, product, 4, user_id=users[0])
        _review(db, product, 5, user_id=users[1])
        _review(db, product, 1, status="rejected", user_id=users[2])

        ratings = recalculate_product_rating(db, product)

        assert ratings == {"ratings_quantity": 2, "ratings_average": 4.5}
        stored = db["product"].find_one({"_id": parse_object_id(product)})
        assert stored["ratings_quantity"] == 2
        assert stored["ratings_average"] == 4.5

    def test_mean_rounded_to_one_decimal(self, db, product):
        for user_id, rating in zip(_user_ids(4), [4, 4, 5, 4]):
            _review(db, product, rating, user_id=user_id)

        assert recalculate_product_rating(db, product)["ratings_average"] == 4.3

    def test_no_approved_reviews_resets_to_default(self, db, product):
        db["product"].update_one({"_id": parse_object_id(product)},
                                 {"$set": {"ratings_average": 2.0, "ratings_quantity": 9}})
        _review(db, product, 2, status="pending")

        recalculate_product_rating(db, product)

        stored = db["product"].find_one({"_id": parse_object_id(product)})
        assert (stored["ratings_average"], stored["ratings_quantity"]) == (4.5, 0)

    def test_distribution_has_every_star(self, db, product):
        users = _user_ids(3)
        _review(db, product, 5, user_id=users[0])
        _review(db, product, 5, user_id=users[1])
        _review(db, product, 3, user_id=users[2])

        assert rating_distribution(db, product) == {"1": 0, "2": 0, "3": 1, "4": 0, "5": 2}

    def test_review_overview(self, db, product):
        users = _user_ids(3)
        _review(db, product, 5, user_id=users[0])
        _review(db, product, 4, status="pending", user_id=users[1])
        _review(db, product, 2, status="rejected", user_id=users[2])

        result = review_overview(db)

        assert result["overview"]["total_reviews"] == 3
        assert result["overview"]["pending_reviews"] == 1
        assert result["overview"]["approved_reviews"] == 1
        assert result["overview"]["rejected_reviews"] == 1
        assert result["overview"]["average_rating"] == pytest.approx(3.7)
        assert result["rating_distribution"] == [{"rating": 5, "count": 1}]

    def test_review_overview_empty(self, db):
        assert review_overview(db)["overview"]["total_reviews"] == 0


class TestProductFilters:
    def test_facets(self, db):
        shoes = make_category(db, "Shoes")
        hats = make_category(db, "Hats")
        make_product(db, shoes, name="A", price=20, brand="Acme", simple_colors=["red", "blue"], sizes=["m"])
        make_product(db, shoes, name="B", price=75, brand="Acme", simple_colors=["red"], sizes=["m", "l"])
        make_product(db, hats, name="C", price=150, brand="Zed", simple_colors=["teal"], sizes=["s"])
        make_product(db, hats, name="D", price=200, brand="Zed")

        filters = product_filters(db)

        categories = {c["label"]: c["count"] for c in filters["categories"]}
        assert categories == {"Shoes": 2, "Hats": 2}
        assert filters["categories"][0]["slug"] == "hats"

        colors = {c["value"]: c for c in filters["colors"]}
        assert colors["red"]["count"] == 2
        assert colors["red"]["label"] == "Red"
        assert colors["red"]["hex"] == "#FF0000"
        assert colors["teal"]["hex"] == "#000000"

        sizes = {s["value"]: s for s in filters["sizes"]}
        assert sizes["m"]["count"] == 2
        assert sizes["l"]["label"] == "L"

        assert {b["value"]: b["count"] for b in filters["brands"]} == {"Acme": 2, "Zed": 2}

        ranges = {r["value"]: r["count"] for r in filters["price_ranges"]}
        assert ranges == {"0-50": 1, "50-100": 1, "100-200": 1, "200+": 1}

    def test_empty_catalog(self, db):
        filters = product_filters(db)

        assert filters["colors"] == []
        assert all(r["count"] == 0 for r in filters["price_ranges"])
