import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, get_db
from errors import ConflictError, ForbiddenError
from schemas import RegisterRequest, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

ADMIN_ROLES = frozenset({"admin", "super-admin"})

_CUSTOMER_ACTIONS = frozenset({
    "order:create",
    "order:read",
    "order:cancel",
    "order:delete",
    "review:write",
    "payment:create",
    "profile:manage",
})
_ADMIN_ACTIONS = _CUSTOMER_ACTIONS | {
    "order:manage",
    "dashboard:read",
    "catalog:write",
    "review:moderate",
    "customer:manage",
    "settings:write",
    "analytics:read",
    "payment:refund",
    "notification:test",
}
_SUPER_ADMIN_ACTIONS = _ADMIN_ACTIONS | {"admin:manage"}

# role -> allowed actions; routes check through require()
ROLE_PERMISSIONS = {
    "customer": _CUSTOMER_ACTIONS,
    "admin": _ADMIN_ACTIONS,
    "super-admin": _SUPER_ADMIN_ACTIONS,
}


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class Principal(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def _principal_from_token(token: str, database: Database) -> Principal:
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id: Optional[str] = payload.get("sub")
        role: str = payload.get("role", "customer")
        if user_id is None:
            raise credentials_exception
        object_id = ObjectId(user_id)
    except (JWTError, InvalidId):
        raise credentials_exception
    collection = "admin" if role in ADMIN_ROLES else "user"
    account = database[collection].find_one({"_id": object_id})
    if not account or not account.get("is_active", True):
        raise credentials_exception
    return Principal(
        id=str(account["_id"]),
        name=account.get("name", ""),
        email=account["email"],
        role=account.get("role", role),
    )


def get_current_user(token: str = Depends(oauth2_scheme), database: Database = Depends(get_db)) -> Principal:
    return _principal_from_token(token, database)


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme),
                      database: Database = Depends(get_db)) -> Optional[Principal]:
    """Resolve the caller if a valid token is present, otherwise treat them as a guest."""
    if not token:
        return None
    try:
        return _principal_from_token(token, database)
    except HTTPException:
        logger.info("Invalid token on optional-auth route, continuing as guest")
        return None


def authorize(principal: Optional[Principal], action: str) -> None:
    if principal is None or action not in ROLE_PERMISSIONS.get(principal.role, frozenset()):
        raise ForbiddenError("You do not have permission to perform this action")


def require(action: str):
    """Dependency factory: authenticate the caller and check `action` against the policy."""
    def dependency(principal: Principal = Depends(get_current_user)) -> Principal:
        authorize(principal, action)
        return principal

    return dependency


def register_user(database: Database, request: RegisterRequest) -> Principal:
    data = User(
        name=request.name,
        email=request.email.lower(),
        password_hash=get_password_hash(request.password),
    ).model_dump()
    if database["user"].find_one({"email": data["email"]}):
        raise ConflictError("Email already registered")
    try:
        user_id = create_document("user", data, database)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    return Principal(id=user_id, name=data["name"], email=data["email"], role="customer")


def login(database: Database, collection: str, email: str, password: str) -> Token:
    account = database[collection].find_one({"email": email.lower()})
    if not account or not verify_password(password, account.get("password_hash", "")):
        raise HTTPException(401, "Incorrect email or password")
    default_role = "admin" if collection == "admin" else "customer"
    access_token = create_access_token({"sub": str(account["_id"]), "role": account.get("role", default_role)})
    return Token(access_token=access_token)
