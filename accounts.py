"""
Account management: customers (admin side), admin accounts (super-admin side)
and the caller's own profile. Password hashes never leave this module.
"""
import logging
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from auth import Principal, get_password_hash, register_user
from database import create_document, now_utc, parse_object_id, serialize_document
from errors import ConflictError, InvalidStateError, NotFoundError
from schemas import Admin, AdminCreate, AdminUpdate, CustomerUpdate, ProfileUpdate, RegisterRequest

logger = logging.getLogger(__name__)

HIDDEN_FIELDS = {"password_hash": 0}


def _update_account(db: Database, collection: str, account_id: str, fields: dict, label: str) -> dict:
    if "email" in fields:
        fields["email"] = fields["email"].lower()
    fields["updated_at"] = now_utc()
    try:
        account = db[collection].find_one_and_update(
            {"_id": parse_object_id(account_id, label)},
            {"$set": fields},
            projection=HIDDEN_FIELDS,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    if not account:
        raise NotFoundError(f"{label} not found")
    return serialize_document(account)


# ---------- Customers ----------

def list_customers(db: Database) -> List[dict]:
    return [serialize_document(u) for u in db["user"].find({}, HIDDEN_FIELDS).sort("created_at", DESCENDING)]


def get_customer(db: Database, customer_id: str) -> dict:
    user = db["user"].find_one({"_id": parse_object_id(customer_id, "Customer")}, HIDDEN_FIELDS)
    if not user:
        raise NotFoundError("Customer not found")
    return serialize_document(user)


def create_customer(db: Database, request: RegisterRequest) -> dict:
    principal = register_user(db, request)
    logger.info("Customer %s created by an admin", principal.id)
    return get_customer(db, principal.id)


def update_customer(db: Database, customer_id: str, changes: CustomerUpdate) -> dict:
    return _update_account(db, "user", customer_id, changes.model_dump(exclude_unset=True, exclude_none=True),
                           "Customer")


def delete_customer(db: Database, customer_id: str) -> None:
    result = db["user"].delete_one({"_id": parse_object_id(customer_id, "Customer")})
    if result.deleted_count == 0:
        raise NotFoundError("Customer not found")
    logger.info("Customer %s deleted", customer_id)


# ---------- Admins ----------

def list_admins(db: Database) -> List[dict]:
    return [serialize_document(a) for a in db["admin"].find({}, HIDDEN_FIELDS).sort("created_at", DESCENDING)]


def create_admin(db: Database, request: AdminCreate) -> dict:
    data = Admin(
        name=request.name,
        email=request.email.lower(),
        password_hash=get_password_hash(request.password),
        role=request.role,
    ).model_dump()
    try:
        admin_id = create_document("admin", data, db)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    logger.info("Admin %s created with role %s", admin_id, request.role)
    return serialize_document(db["admin"].find_one({"_id": parse_object_id(admin_id)}, HIDDEN_FIELDS))


def update_admin(db: Database, admin_id: str, changes: AdminUpdate, acting: Principal) -> dict:
    fields = changes.model_dump(exclude_unset=True, exclude_none=True)
    if admin_id == acting.id and fields.get("role", acting.role) != acting.role:
        raise InvalidStateError("You cannot change your own role")
    if "password" in fields:
        fields["password_hash"] = get_password_hash(fields.pop("password"))
    return _update_account(db, "admin", admin_id, fields, "Admin")


def delete_admin(db: Database, admin_id: str, acting: Principal) -> None:
    if admin_id == acting.id:
        raise InvalidStateError("You cannot delete your own account")
    result = db["admin"].delete_one({"_id": parse_object_id(admin_id, "Admin")})
    if result.deleted_count == 0:
        raise NotFoundError("Admin not found")
    logger.info("Admin %s deleted by %s", admin_id, acting.id)


def ensure_super_admin(db: Database, email: Optional[str] = None, password: Optional[str] = None,
                       name: Optional[str] = None) -> Optional[str]:
    """Create the configured super-admin account if it does not exist yet.

    Returns the new account id, or None when nothing was configured or created.
    """
    email = email if email is not None else config.SUPER_ADMIN_EMAIL
    password = password if password is not None else config.SUPER_ADMIN_PASSWORD
    if not email or not password:
        return None
    if db["admin"].find_one({"email": email.lower()}):
        return None
    request = AdminCreate(name=name or config.SUPER_ADMIN_NAME, email=email, password=password, role="super-admin")
    try:
        admin_id = create_admin(db, request)["id"]
    except ConflictError:
        # another worker created it first
        return None
    logger.info("Bootstrapped super-admin account %s", request.email)
    return admin_id


# ---------- Profile ----------

def _profile_collection(principal: Principal) -> str:
    return "admin" if principal.is_admin else "user"


def get_profile(db: Database, principal: Principal) -> dict:
    account = db[_profile_collection(principal)].find_one({"_id": parse_object_id(principal.id, "User")},
                                                          HIDDEN_FIELDS)
    if not account:
        raise NotFoundError("User not found")
    return serialize_document(account)


def update_profile(db: Database, principal: Principal, changes: ProfileUpdate) -> dict:
    fields = changes.model_dump(exclude_unset=True, exclude_none=True)
    return _update_account(db, _profile_collection(principal), principal.id, fields, "User")
