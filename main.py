import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Type
from urllib.parse import quote

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import cart
import catalog
import config
import database
import notifications
import orders
import payments
import receipts
import reports
import wishlist
from errors import AuthorizationError, ShopError
from schemas import (
    AccountPaymentRequest,
    Cart,
    CartAddRequest,
    CartQuantityRequest,
    CartUpdateRequest,
    Category,
    CategoryCreate,
    CategoryUpdate,
    CheckoutRequest,
    EmailRequest,
    FundsRequest,
    LoginRequest,
    MobilePaymentInitiate,
    MobilePaymentVerify,
    Order,
    OrderAdminUpdate,
    OrderCreate,
    OrderStatusUpdate,
    PaymentProcessRequest,
    Product,
    ProductCreate,
    ProductUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    ResetWithOtpRequest,
    Review,
    ReviewCreate,
    UpdateDetailsRequest,
    UpdatePasswordRequest,
    UpdateRoleRequest,
    User,
    UserCreate,
    UserUpdate,
    VerifyOtpRequest,
    Wishlist,
    WishlistAddRequest,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except PyMongoError as e:
        logger.warning("Could not create indexes: %s", e)
    yield


# FastAPI app
app = FastAPI(title="E-commerce API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.CLIENT_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


# --- Error envelope ---

@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"][1:])
        messages.append(f"{field}: {error['msg']}" if field else error["msg"])
    return JSONResponse(status_code=400, content={"success": False, "message": ", ".join(messages)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


# --- Dependencies ---

async def get_current_user(token: str = Depends(oauth2_scheme)) -> dict:
    return auth.user_from_token(token)


def _require_role(user: dict, roles) -> None:
    if user.get("role") not in roles:
        raise AuthorizationError(f"User role {user.get('role')} is not authorized to access this route")


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    _require_role(user, ("admin",))
    return user


def require_seller(user: dict = Depends(get_current_user)) -> dict:
    _require_role(user, ("seller", "admin"))
    return user


def public(model: Type[BaseModel], doc: Dict[str, Any]) -> Dict[str, Any]:
    """Render a stored document through its schema (camelCase, no secrets)."""
    data = dict(doc)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    return model.model_validate(data).model_dump(by_alias=True, mode="json")


def public_list(model: Type[BaseModel], docs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"success": True, "count": len(docs), "data": [public(model, d) for d in docs]}


def flush_outbox(background_tasks: BackgroundTasks) -> None:
    background_tasks.add_task(notifications.deliver_pending)


# Auth
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest):
    return {"success": True, **auth.register(payload.name, payload.email, payload.password, payload.role)}


@app.post("/api/auth/login")
def login(payload: LoginRequest):
    return {"success": True, **auth.login(payload.email, payload.password)}


@app.get("/api/auth/logout")
def logout(current_user: dict = Depends(get_current_user)):
    return {"success": True, "message": "Logged out"}


@app.get("/api/auth/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(User, current_user)}


@app.put("/api/auth/updatedetails")
def update_details(body: UpdateDetailsRequest, current_user: dict = Depends(get_current_user)):
    user = auth.update_details(current_user, name=body.name, email=body.email, role=body.role)
    return {"success": True, "data": public(User, user)}


@app.put("/api/auth/updaterole")
def update_role(body: UpdateRoleRequest, current_user: dict = Depends(get_current_user)):
    user = auth.update_role(current_user, body.role)
    return {"success": True, "message": "Role updated successfully", "data": public(User, user)}


@app.put("/api/auth/updatepassword")
def update_password(body: UpdatePasswordRequest, current_user: dict = Depends(get_current_user)):
    return {"success": True, **auth.update_password(current_user, body.current_password, body.new_password)}


@app.post("/api/auth/forgotpassword")
def forgot_password(body: EmailRequest, request: Request):
    auth.forgot_password(body.email, str(request.base_url))
    return {"success": True, "data": "Email sent"}


@app.put("/api/auth/resetpassword/{token}")
def reset_password(token: str, body: ResetPasswordRequest):
    return {"success": True, **auth.reset_password(token, body.password)}


@app.post("/api/auth/forgotpasswordotp")
def forgot_password_otp(body: EmailRequest):
    return {"success": True, "message": "OTP sent to email", "data": auth.forgot_password_otp(body.email)}


@app.post("/api/auth/verifyotp")
def verify_otp(body: VerifyOtpRequest):
    return {"success": True, "message": "OTP verified successfully", "data": auth.verify_otp(body.email, body.otp)}


@app.put("/api/auth/resetpasswordwithotp")
def reset_password_with_otp(body: ResetWithOtpRequest):
    return {"success": True, **auth.reset_password_with_otp(body.email, body.otp, body.password)}


# Users (admin)
@app.get("/api/users")
def list_users(admin: dict = Depends(require_admin)):
    return public_list(User, auth.list_users())


@app.post("/api/users", status_code=201)
def create_user(body: UserCreate, admin: dict = Depends(require_admin)):
    user = auth.create_user(body.name, body.email, body.password, body.role, body.account_balance)
    return {"success": True, "data": public(User, user)}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, admin: dict = Depends(require_admin)):
    return {"success": True, "data": public(User, auth.get_user(user_id))}


@app.put("/api/users/{user_id}")
def update_user(user_id: str, body: UserUpdate, admin: dict = Depends(require_admin)):
    user = auth.update_user(user_id, body.model_dump(exclude_none=True))
    return {"success": True, "data": public(User, user)}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(require_admin)):
    auth.delete_user(user_id)
    return {"success": True, "data": {}}


# Products
@app.get("/api/products")
def list_products(search: Optional[str] = None, category: Optional[str] = None,
                  minPrice: Optional[float] = None, maxPrice: Optional[float] = None,
                  sort: Optional[str] = None, page: int = 1, limit: int = catalog.DEFAULT_LIMIT):
    result = catalog.list_products(search, category, minPrice, maxPrice, sort, page, limit)
    return {
        "success": True,
        "count": len(result["items"]),
        "pagination": result["pagination"],
        "data": [public(Product, p) for p in result["items"]],
    }


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreate, current_user: dict = Depends(require_seller)):
    product = catalog.create_product(body.model_dump(), current_user)
    return {"success": True, "data": public(Product, product)}


@app.get("/api/products/seller/{seller_id}")
def products_by_seller(seller_id: str, current_user: dict = Depends(get_current_user)):
    return public_list(Product, catalog.products_by_seller(seller_id))


@app.get("/api/products/seller/{seller_id}/stats")
def seller_stats(seller_id: str, current_user: dict = Depends(require_seller)):
    return {"success": True, "data": catalog.seller_stats(seller_id, current_user)}


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = catalog.get_product(product_id)
    data = public(Product, product)
    data["reviews"] = [public(Review, r) for r in product["reviews"]]
    return {"success": True, "data": data}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, current_user: dict = Depends(require_seller)):
    product = catalog.update_product(product_id, body.model_dump(exclude_none=True), current_user)
    return {"success": True, "data": public(Product, product)}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_seller)):
    catalog.delete_product(product_id, current_user)
    return {"success": True, "data": {}}


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, body: ReviewCreate, current_user: dict = Depends(get_current_user)):
    product = catalog.add_review(product_id, body.rating, body.comment, current_user)
    return {"success": True, "data": public(Product, product)}


# Categories
@app.get("/api/categories")
def list_categories():
    return public_list(Category, catalog.list_categories())


@app.get("/api/categories/{category_id}")
def get_category(category_id: str):
    return {"success": True, "data": public(Category, catalog.get_category(category_id))}


@app.post("/api/categories", status_code=201)
def create_category(body: CategoryCreate, admin: dict = Depends(require_admin)):
    return {"success": True, "data": public(Category, catalog.create_category(body.model_dump()))}


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdate, admin: dict = Depends(require_admin)):
    category = catalog.update_category(category_id, body.model_dump(exclude_none=True))
    return {"success": True, "data": public(Category, category)}


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(require_admin)):
    catalog.delete_category(category_id)
    return {"success": True, "data": {}}


# Cart
@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(Cart, cart.get_cart(str(current_user["_id"])))}


@app.post("/api/cart")
def add_to_cart(body: CartAddRequest, current_user: dict = Depends(get_current_user)):
    data = cart.add_item(str(current_user["_id"]), body.product_id, body.quantity)
    return {"success": True, "data": public(Cart, data)}


@app.put("/api/cart")
def update_cart(body: CartUpdateRequest, current_user: dict = Depends(get_current_user)):
    data = cart.update_item(str(current_user["_id"]), body.product_id, body.quantity)
    return {"success": True, "data": public(Cart, data)}


@app.put("/api/cart/item/{product_id}")
def update_cart_item(product_id: str, body: CartQuantityRequest, current_user: dict = Depends(get_current_user)):
    data = cart.update_item(str(current_user["_id"]), product_id, body.quantity)
    return {"success": True, "data": public(Cart, data)}


@app.delete("/api/cart/item/{product_id}")
def remove_cart_item(product_id: str, current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(Cart, cart.remove_item(str(current_user["_id"]), product_id))}


@app.delete("/api/cart")
def clear_cart(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(Cart, cart.clear(str(current_user["_id"])))}


def _placed(order: Dict[str, Any]) -> Dict[str, Any]:
    return {"order": public(Order, order), **payments.receipt_urls(order["_id"])}


@app.post("/api/cart/checkout", status_code=201)
def checkout(body: CheckoutRequest, background_tasks: BackgroundTasks,
             current_user: dict = Depends(get_current_user)):
    address = body.shipping_address.model_dump() if body.shipping_address else None
    order = cart.checkout(current_user, address, body.payment_method)
    flush_outbox(background_tasks)
    return {"success": True, "message": "Order created successfully", "data": _placed(order)}


@app.post("/api/checkout/browser")
def browser_checkout(body: CheckoutRequest, background_tasks: BackgroundTasks,
                     current_user: dict = Depends(get_current_user)):
    address = body.shipping_address.model_dump() if body.shipping_address else None
    try:
        order = cart.checkout(current_user, address, body.payment_method)
    except ShopError as e:
        return RedirectResponse(f"/payment-error?message={quote(e.message)}", status_code=302)
    flush_outbox(background_tasks)
    return RedirectResponse(
        f"/telebirr-payment-demo?orderId={order['_id']}&amount={order['total_price']}", status_code=302,
    )


# Wishlist
@app.get("/api/wishlist")
def get_wishlist(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(Wishlist, wishlist.get_wishlist(str(current_user["_id"])))}


@app.post("/api/wishlist")
def add_to_wishlist(body: WishlistAddRequest, current_user: dict = Depends(get_current_user)):
    data = wishlist.add(str(current_user["_id"]), body.product_id)
    return {"success": True, "data": public(Wishlist, data)}


@app.delete("/api/wishlist")
def clear_wishlist(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(Wishlist, wishlist.clear(str(current_user["_id"])))}


@app.delete("/api/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(Wishlist, wishlist.remove(str(current_user["_id"]), product_id))}


# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, background_tasks: BackgroundTasks,
                 current_user: dict = Depends(get_current_user)):
    order = orders.create_order(
        current_user,
        [line.model_dump() for line in payload.order_items],
        payload.shipping_address.model_dump(),
        payload.payment_method,
        tax_price=payload.tax_price,
        shipping_price=payload.shipping_price,
        items_price=payload.items_price,
    )
    flush_outbox(background_tasks)
    return {"success": True, "data": _placed(order)}


@app.get("/api/orders")
def all_orders(admin: dict = Depends(require_admin)):
    return public_list(Order, orders.all_orders())


@app.get("/api/orders/myorders")
def my_orders(current_user: dict = Depends(get_current_user)):
    return public_list(Order, orders.my_orders(current_user))


@app.get("/api/orders/seller")
def seller_orders(current_user: dict = Depends(require_seller)):
    return public_list(Order, orders.seller_orders(current_user))


@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public(Order, orders.get_order(order_id, current_user))}


@app.put("/api/orders/{order_id}")
def admin_update_order(order_id: str, body: OrderAdminUpdate, background_tasks: BackgroundTasks,
                       admin: dict = Depends(require_admin)):
    order = orders.admin_update(order_id, admin, status=body.status, is_paid=body.is_paid,
                                is_delivered=body.is_delivered)
    flush_outbox(background_tasks)
    return {"success": True, "data": public(Order, order)}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, admin: dict = Depends(require_admin)):
    orders.delete_order(order_id)
    return {"success": True, "data": {}}


@app.put("/api/orders/{order_id}/seller-update")
def seller_update_order(order_id: str, body: OrderStatusUpdate, background_tasks: BackgroundTasks,
                        current_user: dict = Depends(require_seller)):
    order = orders.seller_update(order_id, body.status, current_user)
    flush_outbox(background_tasks)
    return {"success": True, "data": public(Order, order)}


@app.put("/api/orders/{order_id}/sent")
def mark_order_sent(order_id: str, background_tasks: BackgroundTasks,
                    current_user: dict = Depends(require_seller)):
    order = orders.mark_sent(order_id, current_user)
    flush_outbox(background_tasks)
    return {"success": True, "data": public(Order, order)}


@app.put("/api/orders/{order_id}/receive")
def mark_order_received(order_id: str, background_tasks: BackgroundTasks,
                        current_user: dict = Depends(get_current_user)):
    order = orders.mark_received(order_id, current_user)
    flush_outbox(background_tasks)
    return {"success": True, "data": public(Order, order)}


# Payments
@app.post("/api/payment/process")
def process_payment(body: PaymentProcessRequest, background_tasks: BackgroundTasks,
                    current_user: dict = Depends(get_current_user)):
    result = payments.process_payment(body.order_id, body.amount, current_user)
    flush_outbox(background_tasks)
    return {"success": True, **result}


@app.post("/api/payment/webhook")
async def payment_webhook(request: Request, background_tasks: BackgroundTasks):
    payload = await request.body()
    await run_in_threadpool(payments.handle_webhook, payload, request.headers.get("stripe-signature"))
    flush_outbox(background_tasks)
    return {"received": True}


@app.post("/api/payment/mobile/initiate")
def initiate_mobile_payment(body: MobilePaymentInitiate, current_user: dict = Depends(get_current_user)):
    data = payments.initiate_mobile_payment(current_user, body.order_id, body.amount, body.phone_number)
    return {"success": True, "data": {**data, "expiresAt": data["expiresAt"].isoformat()}}


@app.post("/api/payment/mobile/verify")
def verify_mobile_payment(body: MobilePaymentVerify, background_tasks: BackgroundTasks,
                          current_user: dict = Depends(get_current_user)):
    data = payments.verify_mobile_payment(current_user, body.session_id, body.pin, body.amount)
    flush_outbox(background_tasks)
    return {"success": True, "message": "Payment completed successfully", "data": data}


# Account balance
@app.get("/api/account/balance")
def account_balance(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": {"balance": payments.balance(current_user)}}


@app.post("/api/account/add-funds")
def add_funds(body: FundsRequest, current_user: dict = Depends(get_current_user)):
    balance = payments.add_funds(current_user, body.amount)
    return {"success": True, "message": f"Successfully added ${body.amount:.2f} to your account",
            "data": {"balance": balance}}


@app.post("/api/account/withdraw-funds")
def withdraw_funds(body: FundsRequest, current_user: dict = Depends(get_current_user)):
    balance = payments.withdraw_funds(current_user, body.amount)
    return {"success": True, "message": f"Successfully withdrew ${body.amount:.2f} from your account",
            "data": {"balance": balance}}


@app.post("/api/account/payment")
def account_payment(body: AccountPaymentRequest, background_tasks: BackgroundTasks,
                    current_user: dict = Depends(get_current_user)):
    data = payments.pay_with_balance(current_user, body.order_id, body.amount)
    flush_outbox(background_tasks)
    return {"success": True, "message": "Payment processed successfully", "data": data}


# Receipts
@app.get("/api/receipt/{order_id}/receipt")
def order_receipt(order_id: str, download: bool = False, current_user: dict = Depends(get_current_user)):
    order = receipts.load_for(order_id, current_user)
    html = receipts.render_html(order, receipts.customer_of(order))
    if not download:
        return HTMLResponse(html)
    return Response(
        receipts.render_pdf(html),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="receipt-{order_id}.pdf"'},
    )


@app.get("/api/receipt-data/{order_id}/data")
def order_receipt_data(order_id: str, current_user: dict = Depends(get_current_user)):
    order = receipts.load_for(order_id, current_user)
    return {"success": True, "data": receipts.receipt_data(order)}


# Admin reports
@app.get("/api/admin/dashboard")
def admin_dashboard(admin: dict = Depends(require_admin)):
    stats = reports.dashboard()
    stats["recentOrders"] = [public(Order, o) for o in stats["recentOrders"]]
    stats["topSellingProducts"] = [public(Product, p) for p in stats["topSellingProducts"]]
    return {"success": True, "data": stats}


@app.get("/api/admin/reports/sales")
def sales_report(startDate: Optional[str] = None, endDate: Optional[str] = None,
                 admin: dict = Depends(require_admin)):
    return {"success": True, "data": reports.sales_report(startDate, endDate)}


@app.get("/api/admin/reports/top-products")
def top_products(limit: int = 10, admin: dict = Depends(require_admin)):
    return public_list(Product, reports.top_products(limit))


@app.get("/api/admin/reports/recent-orders")
def recent_orders(limit: int = 10, admin: dict = Depends(require_admin)):
    return public_list(Order, reports.recent_orders(limit))


# Messages
@app.get("/api/messages")
def get_message(request: Request, type: Optional[str] = None, message: Optional[str] = None,
                orderId: Optional[str] = None):
    if "text/html" in request.headers.get("accept", ""):
        return HTMLResponse(receipts.message_page(type, message, orderId))
    return {
        "success": type == "success",
        "type": type,
        "message": message or receipts.default_message(type),
        "orderId": orderId,
        "timestamp": database.utcnow().isoformat(),
    }


@app.get("/order/{order_id}")
def order_redirect(order_id: str):
    return RedirectResponse(
        f"/api/messages?type=success&message=Your+order+was+placed+successfully&orderId={order_id}",
        status_code=302,
    )


# Health + test
@app.get("/")
def root():
    return {"message": "E-commerce API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": config.DATABASE_NAME,
        "stripe": "✅ Configured" if config.STRIPE_SECRET_KEY not in payments.PLACEHOLDER_KEYS else "❌ Not Set",
        "collections": [],
    }
    try:
        collections = database.db.list_collection_names()
        response["collections"] = collections[:10]
    except Exception as e:
        response["error"] = str(e)[:120]
    return response
