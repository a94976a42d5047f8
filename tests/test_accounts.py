import pytest

import accounts
from conftest import make_admin, make_user

OPS = {"name": "Ops", "email": "Ops@Example.com", "password": "ops-pass"}


def _login(client, path, email, password):
    return client.post(path, data={"username": email, "password": password})


class TestAdminManagement:
    def test_only_super_admin_can_list(self, client, admin, super_admin):
        denied = client.get("/api/admin/manage", headers=admin["headers"])
        response = client.get("/api/admin/manage", headers=super_admin["headers"])

        assert denied.status_code == 403
        assert {a["email"] for a in response.json()} == {"admin@example.com", "owner@example.com"}
        assert all("password_hash" not in a for a in response.json())

    def test_created_admin_can_log_in(self, client, super_admin):
        response = client.post("/api/admin/manage", json=OPS, headers=super_admin["headers"])

        assert response.status_code == 201
        body = response.json()
        assert (body["email"], body["role"]) == ("ops@example.com", "admin")
        assert "password_hash" not in body
        assert _login(client, "/api/admin/login", "ops@example.com", "ops-pass").status_code == 200

    def test_admin_cannot_create_admins(self, client, db, admin):
        response = client.post("/api/admin/manage", json=OPS, headers=admin["headers"])

        assert response.status_code == 403
        assert db["admin"].count_documents({}) == 1

    def test_duplicate_email(self, client, admin, super_admin):
        response = client.post("/api/admin/manage", json=dict(OPS, email="admin@example.com"),
                               headers=super_admin["headers"])

        assert response.status_code == 409

    def test_unknown_role_is_rejected(self, client, super_admin):
        response = client.post("/api/admin/manage", json=dict(OPS, role="owner"), headers=super_admin["headers"])

        assert response.status_code == 400

    def test_update_role_and_password(self, client, db, super_admin):
        admin_id = make_admin(db, email="ops@example.com")

        response = client.put(f"/api/admin/manage/{admin_id}", json={"role": "super-admin", "password": "new-pass"},
                              headers=super_admin["headers"])

        assert response.json()["role"] == "super-admin"
        assert "password_hash" not in response.json()
        assert _login(client, "/api/admin/login", "ops@example.com", "new-pass").status_code == 200

    def test_cannot_change_own_role(self, client, super_admin):
        response = client.put(f"/api/admin/manage/{super_admin['id']}", json={"role": "admin"},
                              headers=super_admin["headers"])

        assert response.status_code == 400

    def test_delete(self, client, db, super_admin):
        admin_id = make_admin(db, email="ops@example.com")

        response = client.delete(f"/api/admin/manage/{admin_id}", headers=super_admin["headers"])
        again = client.delete(f"/api/admin/manage/{admin_id}", headers=super_admin["headers"])

        assert response.status_code == 200
        assert again.status_code == 404

    def test_cannot_delete_self(self, client, db, super_admin):
        response = client.delete(f"/api/admin/manage/{super_admin['id']}", headers=super_admin["headers"])

        assert response.status_code == 400
        assert db["admin"].count_documents({}) == 1


class TestSuperAdminBootstrap:
    def test_created_once(self, db):
        first = accounts.ensure_super_admin(db, email="Boss@example.com", password="boss-pass", name="Boss")
        second = accounts.ensure_super_admin(db, email="boss@example.com", password="boss-pass")

        assert first is not None
        assert second is None
        stored = db["admin"].find_one({"email": "boss@example.com"})
        assert (stored["name"], stored["role"]) == ("Boss", "super-admin")

    def test_unconfigured_is_a_no_op(self, db):
        assert accounts.ensure_super_admin(db, email="", password="") is None
        assert db["admin"].count_documents({}) == 0


class TestCustomers:
    def test_admin_creates_customer(self, client, admin):
        response = client.post("/api/admin/customers", json={"name": "Cara", "email": "cara@example.com",
                                                             "password": "cara-pass"}, headers=admin["headers"])

        assert response.status_code == 201
        assert response.json()["role"] == "customer"
        assert "password_hash" not in response.json()
        assert _login(client, "/api/auth/login", "cara@example.com", "cara-pass").status_code == 200

    def test_customer_cannot_create_customers(self, client, customer):
        response = client.post("/api/admin/customers", json={"name": "Cara", "email": "cara@example.com",
                                                             "password": "cara-pass"}, headers=customer["headers"])

        assert response.status_code == 403

    def test_list_hides_password_hashes(self, client, admin, customer, other_customer):
        response = client.get("/api/admin/customers", headers=admin["headers"])

        assert len(response.json()) == 2
        assert all("password_hash" not in c for c in response.json())

    def test_update_to_taken_email(self, client, admin, customer, other_customer):
        response = client.put(f"/api/admin/customers/{customer['id']}", json={"email": "BOB@example.com"},
                              headers=admin["headers"])

        assert response.status_code == 409

    def test_deactivate_and_delete(self, client, admin, customer):
        client.put(f"/api/admin/customers/{customer['id']}", json={"isActive": False}, headers=admin["headers"])

        assert client.get("/api/auth/me", headers=customer["headers"]).status_code == 401
        assert client.delete(f"/api/admin/customers/{customer['id']}", headers=admin["headers"]).status_code == 200
        assert client.get(f"/api/admin/customers/{customer['id']}", headers=admin["headers"]).status_code == 404


class TestProfile:
    def test_get_own_profile(self, client, customer):
        response = client.get("/api/users/profile", headers=customer["headers"])

        assert response.json()["email"] == "alice@example.com"
        assert "password_hash" not in response.json()

    def test_update_profile(self, client, db, customer):
        response = client.patch("/api/users/profile", json={"name": "Alicia", "phone": "555-0101"},
                                headers=customer["headers"])

        assert (response.json()["name"], response.json()["phone"]) == ("Alicia", "555-0101")
        assert db["user"].find_one({"email": "alice@example.com"})["name"] == "Alicia"

    def test_email_taken_by_another_customer(self, client, customer, other_customer):
        response = client.patch("/api/users/profile", json={"email": "bob@example.com"}, headers=customer["headers"])

        assert response.status_code == 409

    def test_requires_token(self, client):
        assert client.get("/api/users/profile").status_code == 401

    def test_admin_profile_reads_admin_account(self, client, db, admin):
        make_user(db, email="admin@example.com")

        response = client.get("/api/users/profile", headers=admin["headers"])

        assert (response.json()["id"], response.json()["role"]) == (admin["id"], "admin")


@pytest.mark.parametrize("path", ["/api/admin/manage", "/api/admin/customers"])
def test_account_routes_require_login(client, path):
    assert client.get(path).status_code == 401
