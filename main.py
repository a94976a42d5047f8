import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pymongo.database import Database

import accounts
import analytics
import catalog
import config
import database as database_module
import reporting
import site_settings
from auth import Principal, Token, get_current_user, get_optional_user, login, register_user, require
from database import ensure_indexes, get_db, now_utc
from errors import AppError, first_error_message
from mailer import Mailer, get_mailer
from notifications import NEW_ORDER, Notifier, broadcaster, get_notifier
from orders import OrderService
from payments import PaymentService
from reviews import ReviewService
from schemas import (
    AdminCreate,
    AdminUpdate,
    Category,
    CategoryUpdate,
    ColorTrackRequest,
    CombinationTrackRequest,
    ConfirmPaymentRequest,
    CreateCustomerRequest,
    CustomerUpdate,
    DashboardStats,
    OrderCreate,
    OrderStatusUpdate,
    PaymentIntentRequest,
    Product,
    ProductUpdate,
    ProfileUpdate,
    RefundRequest,
    RegisterRequest,
    ReviewCreate,
    ReviewStatusUpdate,
    ReviewUpdate,
    SavePaymentMethodRequest,
    SettingUpdate,
    SizeTrackRequest,
)

logging.basicConfig(
    level=config.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database_module.db is not None:
        ensure_indexes(database_module.db)
        accounts.ensure_super_admin(database_module.db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="E‑Commerce API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": first_error_message(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"detail": "Internal server error"}
    if not config.is_production():
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Services
def get_clock() -> Callable:
    return now_utc


def get_order_service(database: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier),
                      mailer: Mailer = Depends(get_mailer), clock: Callable = Depends(get_clock)) -> OrderService:
    return OrderService(database, notifier, mailer, clock=clock)


def get_review_service(database: Database = Depends(get_db),
                       notifier: Notifier = Depends(get_notifier)) -> ReviewService:
    return ReviewService(database, notifier)


def get_payment_service(database: Database = Depends(get_db)) -> PaymentService:
    return PaymentService(database)


@app.get("/")
def read_root():
    return {"message": "E‑commerce backend is running"}


@app.get("/healthz")
def healthz():
    return {"status": "ok", "time": now_utc(), "notification_clients": broadcaster.connection_count}


# Auth
@app.post("/api/auth/register", response_model=Principal, status_code=201)
def register(request: RegisterRequest, database: Database = Depends(get_db)):
    return register_user(database, request)


@app.post("/api/auth/login", response_model=Token)
def user_login(form_data: OAuth2PasswordRequestForm = Depends(), database: Database = Depends(get_db)):
    return login(database, "user", form_data.username, form_data.password)


@app.get("/api/auth/me", response_model=Principal)
def me(current: Principal = Depends(get_current_user)):
    return current


@app.get("/api/users/profile")
def get_profile(database: Database = Depends(get_db), current: Principal = Depends(require("profile:manage"))):
    return accounts.get_profile(database, current)


@app.patch("/api/users/profile")
def update_profile(changes: ProfileUpdate, database: Database = Depends(get_db),
                   current: Principal = Depends(require("profile:manage"))):
    return accounts.update_profile(database, current, changes)


# Categories
@app.get("/api/categories")
def list_categories(database: Database = Depends(get_db)):
    return catalog.list_categories(database)


@app.get("/api/categories/featured")
def featured_categories(database: Database = Depends(get_db)):
    return catalog.featured_categories(database)


@app.get("/api/categories/slug/{slug}")
def get_category_by_slug(slug: str, database: Database = Depends(get_db)):
    return catalog.get_category_by_slug(database, slug)


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, database: Database = Depends(get_db)):
    return catalog.get_category(database, category_id)


@app.post("/api/categories", status_code=201)
def create_category(category: Category, database: Database = Depends(get_db),
                    _: Principal = Depends(require("catalog:write"))):
    return catalog.create_category(database, category)


@app.patch("/api/categories/{category_id}")
def update_category(category_id: str, changes: CategoryUpdate, database: Database = Depends(get_db),
                    _: Principal = Depends(require("catalog:write"))):
    return catalog.update_category(database, category_id, changes)


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, database: Database = Depends(get_db),
                    _: Principal = Depends(require("catalog:write"))):
    catalog.delete_category(database, category_id)
    return {"message": "Category deleted"}


# Products
@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    brand: Optional[str] = None,
    featured: Optional[bool] = None,
    q: Optional[str] = None,
    sort_by: Optional[str] = Query(None, description="newest|price-low-high|price-high-low|rating"),
    page: int = Query(1, ge=1),
    limit: int = Query(catalog.DEFAULT_PAGE_SIZE, ge=1, le=100),
    database: Database = Depends(get_db),
):
    return catalog.list_products(database, category=category, min_price=min_price, max_price=max_price,
                                 brand=brand, featured=featured, search=q, sort_by=sort_by, page=page, limit=limit)


@app.get("/api/products/search")
def search_products(q: Optional[str] = None, database: Database = Depends(get_db)):
    return catalog.search_products(database, q)


@app.get("/api/products/filters")
def product_filters(database: Database = Depends(get_db)):
    return reporting.product_filters(database)


@app.get("/api/products/featured")
@app.get("/api/products/popular")
def featured_products(database: Database = Depends(get_db)):
    return catalog.featured_products(database)


@app.get("/api/products/new-arrivals")
def new_arrivals(database: Database = Depends(get_db)):
    return catalog.new_arrivals(database)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, database: Database = Depends(get_db)):
    return catalog.get_product(database, product_id)


@app.post("/api/products", status_code=201)
def create_product(product: Product, database: Database = Depends(get_db),
                   _: Principal = Depends(require("catalog:write"))):
    return catalog.create_product(database, product)


@app.patch("/api/products/{product_id}")
def update_product(product_id: str, changes: ProductUpdate, database: Database = Depends(get_db),
                   _: Principal = Depends(require("catalog:write"))):
    return catalog.update_product(database, product_id, changes)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, database: Database = Depends(get_db),
                   _: Principal = Depends(require("catalog:write"))):
    catalog.delete_product(database, product_id)
    return {"message": "Product deleted"}


# Reviews
@app.get("/api/reviews/product/{product_id}")
def product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    rating: Optional[int] = Query(None, ge=1, le=5),
    reviews: ReviewService = Depends(get_review_service),
):
    return reviews.list_for_product(product_id, page=page, limit=limit, sort_by=sort_by,
                                    sort_order=sort_order, rating=rating)


@app.post("/api/reviews/product/{product_id}", status_code=201)
def create_review(product_id: str, review: ReviewCreate, reviews: ReviewService = Depends(get_review_service),
                  current: Principal = Depends(require("review:write"))):
    return reviews.create(product_id, review, current)


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, changes: ReviewUpdate, reviews: ReviewService = Depends(get_review_service),
                  current: Principal = Depends(require("review:write"))):
    return reviews.update(review_id, changes, current)


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, reviews: ReviewService = Depends(get_review_service),
                  current: Principal = Depends(require("review:write"))):
    reviews.delete(review_id, current)
    return {"message": "Review deleted successfully"}


@app.post("/api/reviews/{review_id}/helpful")
def mark_review_helpful(review_id: str, reviews: ReviewService = Depends(get_review_service),
                        _: Principal = Depends(require("review:write"))):
    return {"helpful": reviews.mark_helpful(review_id)}


# Orders
@app.post("/api/orders", status_code=201)
def create_order(
    order: OrderCreate,
    response: Response,
    idempotency_key: Optional[str] = Header(None),
    user: Optional[Principal] = Depends(get_optional_user),
    orders: OrderService = Depends(get_order_service),
):
    key = idempotency_key or order.idempotency_key
    email = order.customer_info.email if order.customer_info else None
    existing = orders.find_by_idempotency_key(key, user, email)
    if existing:
        response.status_code = 200
        return existing
    return orders.create(order, user=user, idempotency_key=key)


@app.get("/api/orders/my-orders")
def my_orders(orders: OrderService = Depends(get_order_service),
              current: Principal = Depends(require("order:read"))):
    return orders.list_for_user(current.id)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, orders: OrderService = Depends(get_order_service),
              current: Principal = Depends(require("order:read"))):
    return orders.get(order_id, requester=current)


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, orders: OrderService = Depends(get_order_service),
                 current: Principal = Depends(require("order:cancel"))):
    return orders.cancel(order_id, current.id)


@app.delete("/api/orders/{order_id}/user-delete")
def user_delete_order(order_id: str, orders: OrderService = Depends(get_order_service),
                      current: Principal = Depends(require("order:delete"))):
    orders.delete_by_user(order_id, current.id)
    return {"message": "Order deleted successfully"}


# Admin
@app.post("/api/admin/login", response_model=Token)
def admin_login(form_data: OAuth2PasswordRequestForm = Depends(), database: Database = Depends(get_db)):
    return login(database, "admin", form_data.username, form_data.password)


@app.get("/api/admin/dashboard-stats", response_model=DashboardStats)
def dashboard_stats(database: Database = Depends(get_db), _: Principal = Depends(require("dashboard:read"))):
    return reporting.dashboard_stats(database)


@app.get("/api/admin/orders")
def admin_list_orders(orders: OrderService = Depends(get_order_service),
                      _: Principal = Depends(require("order:manage"))):
    return orders.list_all()


@app.get("/api/admin/orders/{order_id}")
def admin_get_order(order_id: str, orders: OrderService = Depends(get_order_service),
                    _: Principal = Depends(require("order:manage"))):
    return orders.get(order_id)


@app.put("/api/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, update: OrderStatusUpdate,
                              orders: OrderService = Depends(get_order_service),
                              _: Principal = Depends(require("order:manage"))):
    return orders.update_status(order_id, update.status)


@app.delete("/api/admin/orders/{order_id}")
def admin_delete_order(order_id: str, orders: OrderService = Depends(get_order_service),
                       _: Principal = Depends(require("order:manage"))):
    orders.delete_by_admin(order_id)
    return {"message": "Order deleted successfully"}


@app.get("/api/admin/customers")
def list_customers(database: Database = Depends(get_db), _: Principal = Depends(require("customer:manage"))):
    return accounts.list_customers(database)


@app.post("/api/admin/customers", status_code=201)
def create_customer_account(request: RegisterRequest, database: Database = Depends(get_db),
                            _: Principal = Depends(require("customer:manage"))):
    return accounts.create_customer(database, request)


@app.get("/api/admin/customers/{customer_id}")
def get_customer(customer_id: str, database: Database = Depends(get_db),
                 _: Principal = Depends(require("customer:manage"))):
    return accounts.get_customer(database, customer_id)


@app.put("/api/admin/customers/{customer_id}")
def update_customer(customer_id: str, changes: CustomerUpdate, database: Database = Depends(get_db),
                    _: Principal = Depends(require("customer:manage"))):
    return accounts.update_customer(database, customer_id, changes)


@app.delete("/api/admin/customers/{customer_id}")
def delete_customer(customer_id: str, database: Database = Depends(get_db),
                    _: Principal = Depends(require("customer:manage"))):
    accounts.delete_customer(database, customer_id)
    return {"message": "Customer deleted successfully"}


@app.get("/api/admin/manage")
def list_admins(database: Database = Depends(get_db), _: Principal = Depends(require("admin:manage"))):
    return accounts.list_admins(database)


@app.post("/api/admin/manage", status_code=201)
def create_admin(request: AdminCreate, database: Database = Depends(get_db),
                 _: Principal = Depends(require("admin:manage"))):
    return accounts.create_admin(database, request)


@app.put("/api/admin/manage/{admin_id}")
def update_admin(admin_id: str, changes: AdminUpdate, database: Database = Depends(get_db),
                 current: Principal = Depends(require("admin:manage"))):
    return accounts.update_admin(database, admin_id, changes, current)


@app.delete("/api/admin/manage/{admin_id}")
def delete_admin(admin_id: str, database: Database = Depends(get_db),
                 current: Principal = Depends(require("admin:manage"))):
    accounts.delete_admin(database, admin_id, current)
    return {"message": "Admin deleted successfully"}


@app.get("/api/admin/reviews")
def admin_list_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    rating: Optional[int] = Query(None, ge=1, le=5),
    reviews: ReviewService = Depends(get_review_service),
    _: Principal = Depends(require("review:moderate")),
):
    return reviews.list_all(page=page, limit=limit, status=status, rating=rating)


@app.get("/api/admin/reviews/stats")
def admin_review_stats(reviews: ReviewService = Depends(get_review_service),
                       _: Principal = Depends(require("review:moderate"))):
    return reviews.overview()


@app.get("/api/admin/reviews/{review_id}")
def admin_get_review(review_id: str, reviews: ReviewService = Depends(get_review_service),
                     _: Principal = Depends(require("review:moderate"))):
    return reviews.get(review_id)


@app.patch("/api/admin/reviews/{review_id}/status")
def admin_set_review_status(review_id: str, update: ReviewStatusUpdate,
                            reviews: ReviewService = Depends(get_review_service),
                            _: Principal = Depends(require("review:moderate"))):
    return reviews.set_status(review_id, update)


@app.delete("/api/admin/reviews/{review_id}")
def admin_delete_review(review_id: str, reviews: ReviewService = Depends(get_review_service),
                        _: Principal = Depends(require("review:moderate"))):
    reviews.admin_delete(review_id)
    return {"message": "Review deleted successfully"}


@app.post("/api/admin/test-notification")
def test_notification(notifier: Notifier = Depends(get_notifier),
                      _: Principal = Depends(require("notification:test"))):
    notifier.emit(NEW_ORDER, {
        "order_id": "test-order",
        "customer": "Test Customer",
        "total_amount": 0,
        "created_at": now_utc(),
        "test": True,
    })
    return {"message": "Test notification sent"}


# Settings
@app.get("/api/settings")
def list_settings(database: Database = Depends(get_db)):
    return site_settings.list_settings(database)


@app.get("/api/settings/{key}")
def get_setting(key: str, database: Database = Depends(get_db)):
    return site_settings.get_setting(database, key)


@app.put("/api/settings/{key}")
def update_setting(key: str, update: SettingUpdate, database: Database = Depends(get_db),
                   notifier: Notifier = Depends(get_notifier), _: Principal = Depends(require("settings:write"))):
    return site_settings.upsert_setting(database, notifier, key, update)


# Analytics
def _client_meta(request: Request):
    return (request.client.host if request.client else None), request.headers.get("user-agent")


@app.post("/api/color-analytics/track", status_code=201)
def track_color(body: ColorTrackRequest, request: Request, database: Database = Depends(get_db),
                user: Optional[Principal] = Depends(get_optional_user)):
    ip_address, user_agent = _client_meta(request)
    return analytics.track_color(database, body, user.id if user else None, ip_address, user_agent)


@app.post("/api/size-analytics/track", status_code=201)
def track_size(body: SizeTrackRequest, request: Request, database: Database = Depends(get_db),
               user: Optional[Principal] = Depends(get_optional_user)):
    ip_address, user_agent = _client_meta(request)
    return analytics.track_size(database, body, user.id if user else None, ip_address, user_agent)


@app.post("/api/product-analytics/track-combination", status_code=201)
def track_combination(body: CombinationTrackRequest, request: Request, database: Database = Depends(get_db),
                      user: Optional[Principal] = Depends(get_optional_user)):
    ip_address, user_agent = _client_meta(request)
    return analytics.track_combination(database, body, user.id if user else None, ip_address, user_agent)


@app.get("/api/color-analytics/admin/stats")
def color_stats(time_range: str = analytics.DEFAULT_TIME_RANGE, product_id: Optional[str] = None,
                database: Database = Depends(get_db), _: Principal = Depends(require("analytics:read"))):
    return analytics.stats(database, "color", time_range=time_range, product_id=product_id)


@app.get("/api/size-analytics/admin/stats")
def size_stats(time_range: str = analytics.DEFAULT_TIME_RANGE, product_id: Optional[str] = None,
               database: Database = Depends(get_db), _: Principal = Depends(require("analytics:read"))):
    return analytics.stats(database, "size", time_range=time_range, product_id=product_id)


@app.get("/api/product-analytics/admin/stats")
def combination_stats(time_range: str = analytics.DEFAULT_TIME_RANGE, product_id: Optional[str] = None,
                      database: Database = Depends(get_db), _: Principal = Depends(require("analytics:read"))):
    return analytics.stats(database, "combination", time_range=time_range, product_id=product_id)


# Payments
@app.post("/api/payment/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         payments: PaymentService = Depends(get_payment_service)):
    payload = await request.body()
    return await run_in_threadpool(payments.handle_webhook, payload, stripe_signature)


@app.post("/api/payment/create-payment-intent")
def create_payment_intent(body: PaymentIntentRequest, payments: PaymentService = Depends(get_payment_service),
                          user: Optional[Principal] = Depends(get_optional_user)):
    return payments.create_payment_intent(body.amount, body.currency, body.order_id, body.items, user)


@app.post("/api/payment/confirm-payment")
def confirm_payment(body: ConfirmPaymentRequest, payments: PaymentService = Depends(get_payment_service)):
    return payments.confirm_payment(body.payment_intent_id, body.order_id)


@app.post("/api/payment/create-customer")
def create_customer(body: CreateCustomerRequest, payments: PaymentService = Depends(get_payment_service),
                    current: Principal = Depends(require("payment:create"))):
    return {"customer_id": payments.create_customer(current, body.email, body.name)}


@app.get("/api/payment/payment-methods")
def payment_methods(payments: PaymentService = Depends(get_payment_service),
                    current: Principal = Depends(require("payment:create"))):
    return payments.list_payment_methods(current)


@app.post("/api/payment/save-payment-method")
def save_payment_method(body: SavePaymentMethodRequest, payments: PaymentService = Depends(get_payment_service),
                        current: Principal = Depends(require("payment:create"))):
    payments.save_payment_method(current, body.payment_method_id)
    return {"message": "Payment method saved successfully"}


@app.post("/api/payment/refund")
def refund(body: RefundRequest, payments: PaymentService = Depends(get_payment_service),
           _: Principal = Depends(require("payment:refund"))):
    return payments.refund(body.payment_intent_id, body.amount, body.reason)


# Real-time notifications
@app.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket):
    await broadcaster.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Notification client disconnected")
    finally:
        broadcaster.disconnect(websocket)


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = database_module.db
    if db is not None:
        response["database"] = "✅ Available"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
