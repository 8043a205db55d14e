import logging
import re
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool

from . import admin, cart, config, database, giftcards, investment, orders, payments, webhooks
from .auth import (
    AuthContext,
    check_admin_credentials,
    check_password,
    create_token,
    hash_password,
    require_admin,
    require_user,
)
from .database import create_document, get_db, get_documents, object_id, serialize
from .errors import AppError, Conflict, NotFound, Unauthorized
from .notifications import Mailer, get_mailer
from .payments import StripeGateway, get_gateway
from .schemas import (
    AddToCartRequest,
    AdminLoginRequest,
    CheckoutRequest,
    GiftCardIssueRequest,
    GiftCardPurchaseRequest,
    GiftCardVerifyRequest,
    LoginRequest,
    Product,
    ProfileUpdate,
    QuantityUpdate,
    RatesUpdate,
    RedeemRequest,
    SessionRequest,
    SignupRequest,
    StatusUpdate,
    TradeRequest,
    User,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes(database.db)
    except PyMongoError as e:
        logger.error("Could not ensure indexes: %s", e)
    yield


app = FastAPI(title="Royal Jewels API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s (%.1f ms)",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


class TokenResponse(BaseModel):
    token: str
    name: str
    email: str
    is_admin: bool


@app.get("/")
def root():
    return {"status": "ok", "service": "royal-jewels-backend"}


@app.get("/schema")
def schema_overview():
    return {
        "collections": ["user", "product", "cart", "order", "investment", "giftcard", "rate"],
    }


# Auth Endpoints
@app.post("/api/auth/signup", response_model=TokenResponse)
def signup(payload: SignupRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise Conflict("Email already registered")
    user = User(
        name=payload.name,
        email=payload.email,
        password_hash=hash_password(payload.password),
        address=payload.address,
        phone=payload.phone,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    logger.info("User %s signed up", user_id)
    token = create_token(user_id, user.email, user.name)
    return TokenResponse(token=token, name=user.name, email=user.email, is_admin=False)


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not check_password(payload.password, user["password_hash"]):
        raise Unauthorized("Invalid credentials")
    token = create_token(str(user["_id"]), user["email"], user["name"])
    return TokenResponse(token=token, name=user["name"], email=user["email"], is_admin=False)


@app.post("/api/auth/admin-login", response_model=TokenResponse)
def admin_login(payload: AdminLoginRequest):
    if not check_admin_credentials(payload.username, payload.password):
        raise Unauthorized("Invalid credentials")
    token = create_token("admin", "", payload.username, is_admin=True)
    return TokenResponse(token=token, name=payload.username, email="", is_admin=True)


# Profile
@app.get("/api/user/profile")
def get_profile(ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": object_id(ctx.user_id)}, {"password_hash": 0})
    if not user:
        raise NotFound("User not found")
    return serialize(user)


@app.put("/api/user/profile")
def update_profile(payload: ProfileUpdate, ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_none=True)
    if changes:
        db["user"].update_one({"_id": object_id(ctx.user_id)}, {"$set": {**changes, "updated_at": database.utcnow()}})
    return get_profile(ctx, db)


@app.get("/api/user/orders")
def user_orders(ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return orders.list_orders(db, ctx)


@app.get("/api/user/investments")
def user_investments(ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return investment.history(db, ctx.user_id)


# Product Endpoints
@app.get("/api/products")
def list_products(category: Optional[str] = None, q: Optional[str] = None, db: Database = Depends(get_db)):
    filt = {}
    if category:
        filt["category"] = category
    if q:
        pattern = re.escape(q)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return [serialize(p) for p in get_documents(db, "product", filt)]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = db["product"].find_one({"_id": object_id(product_id)})
    if not doc:
        raise NotFound("Product not found")
    return serialize(doc)


# Cart
@app.get("/api/cart")
def get_cart(ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return cart.get_cart(db, ctx)


@app.post("/api/cart")
def add_to_cart(payload: AddToCartRequest, ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return cart.add_or_update(db, ctx, payload.product_id, payload.quantity)


@app.put("/api/cart/{item_id}")
def update_cart_item(
    item_id: str,
    payload: QuantityUpdate,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
):
    return cart.update_quantity(db, ctx, item_id, payload.quantity)


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return cart.remove(db, ctx, item_id)


# Orders
@app.post("/api/order", status_code=201)
def create_order(
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    return orders.create_order(db, gateway, ctx)


@app.get("/api/order")
def list_orders(ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return orders.list_orders(db, ctx)


@app.get("/api/order/{order_id}")
def get_order(order_id: str, ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return orders.get_order(db, ctx, order_id)


# Payment
@app.post("/api/payment/checkout")
def payment_checkout(
    payload: CheckoutRequest,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    return orders.checkout(db, gateway, mailer, ctx, payload.order_id, payload.gift_card_code)


@app.post("/api/payment/verify")
def payment_verify(
    payload: SessionRequest,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    return orders.verify_payment(db, gateway, mailer, ctx, payload.session_id)


@app.post("/api/payment/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    payload = await request.body()
    event = payments.parse_event(payload, stripe_signature)
    return await run_in_threadpool(webhooks.handle_event, db, mailer, event)


# Investment
@app.get("/api/investment/rates")
def investment_rates(db: Database = Depends(get_db)):
    rates = investment.get_rates(db)
    return {"goldRate": rates["Gold"], "silverRate": rates["Silver"], "version": rates["version"]}


@app.get("/api/investment/balances")
def investment_balances(ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return investment.balances(db, ctx)


@app.post("/api/investment/buy")
def investment_buy(
    payload: TradeRequest,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    return investment.buy(db, gateway, ctx, payload.type, payload.amount)


@app.post("/api/investment/verify-buy")
def investment_verify_buy(
    payload: SessionRequest,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    return investment.verify_buy(db, gateway, mailer, ctx, payload.session_id)


@app.post("/api/investment/sell", status_code=201)
def investment_sell(
    payload: TradeRequest,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    return investment.sell(db, mailer, ctx, payload.type, payload.amount)


@app.get("/api/investment/view")
def investment_view(ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    return investment.history(db, ctx.user_id)


# Gift cards
@app.post("/api/giftcard/generate")
def giftcard_generate(
    payload: GiftCardPurchaseRequest,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    return giftcards.start_purchase(db, gateway, ctx, payload.amount, payload.recipient_email)


@app.post("/api/giftcard/verify-purchase")
def giftcard_verify_purchase(
    payload: GiftCardVerifyRequest,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
):
    return giftcards.verify_purchase(db, gateway, mailer, ctx, payload.session_id, payload.amount)


@app.post("/api/giftcard/redeem")
def giftcard_redeem(payload: RedeemRequest, ctx: AuthContext = Depends(require_user), db: Database = Depends(get_db)):
    card = giftcards.redeem(db, payload.code, ctx.user_id)
    return {"message": "Gift card redeemed successfully", "amount": card["amount"]}


@app.get("/api/giftcard/{code}")
def giftcard_lookup(code: str, db: Database = Depends(get_db)):
    return giftcards.lookup(db, code)


# Admin
@app.get("/api/admin/overview")
def admin_overview(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.overview(db)


@app.get("/api/admin/sales-data")
def admin_sales_data(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.sales_data(db)


@app.get("/api/admin/products")
def admin_list_products(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return [serialize(p) for p in get_documents(db, "product")]


@app.post("/api/admin/products", status_code=201)
def admin_create_product(payload: Product, ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return {"id": admin.create_product(db, payload)}


@app.put("/api/admin/products/{product_id}")
def admin_update_product(
    product_id: str,
    payload: Product,
    ctx: AuthContext = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return admin.update_product(db, product_id, payload)


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    admin.delete_product(db, product_id)
    return {"status": "deleted"}


@app.get("/api/admin/orders")
def admin_list_orders(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.list_orders(db)


@app.put("/api/admin/orders/{order_id}/status")
def admin_order_status(
    order_id: str,
    payload: StatusUpdate,
    ctx: AuthContext = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return orders.set_status(db, order_id, payload.status)


@app.get("/api/admin/users")
def admin_list_users(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.list_users(db)


@app.get("/api/admin/users/{user_id}")
def admin_user_detail(user_id: str, ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.user_detail(db, user_id)


@app.put("/api/admin/users/{user_id}/ban")
def admin_ban_user(user_id: str, ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.ban_user(db, user_id)


@app.get("/api/admin/investments")
def admin_investments(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.investment_summary(db)


@app.put("/api/admin/investments/rates")
def admin_update_rates(payload: RatesUpdate, ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    rates = investment.update_rates(db, payload.gold_rate, payload.silver_rate, payload.expected_version)
    return {"goldRate": rates["Gold"], "silverRate": rates["Silver"], "version": rates["version"]}


@app.post("/api/admin/giftcards", status_code=201)
def admin_issue_gift_card(
    payload: GiftCardIssueRequest,
    ctx: AuthContext = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return admin.issue_gift_card(db, payload.amount)


@app.get("/api/admin/giftcards")
def admin_list_gift_cards(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.list_gift_cards(db)


@app.get("/api/admin/giftcards/stats")
def admin_gift_card_stats(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    return admin.gift_card_stats(db)


# Seed demo data if empty
@app.post("/api/admin/seed")
def seed_demo(ctx: AuthContext = Depends(require_admin), db: Database = Depends(get_db)):
    count = admin.seed_products(db)
    if not count:
        return {"status": "already-seeded"}
    return {"status": "seeded", "count": count}


# Simple health
@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    status = {
        "backend": "running",
        "database": "not-configured",
    }
    try:
        db.list_collection_names()
        status["database"] = "connected"
    except PyMongoError:
        status["database"] = "error"
    return status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
