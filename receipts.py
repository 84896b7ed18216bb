"""
Order receipts.

The HTML receipt is rendered locally with Jinja2. PDFs are produced by an
external HTML to PDF service (any Gotenberg compatible endpoint): the
rendered page is posted as ``index.html`` and the response body is the PDF.
"""
import logging
from typing import Any, Dict, Optional

import httpx
from jinja2 import DictLoader, Environment, select_autoescape

import config
import database
import orders
from errors import AuthorizationError, UpstreamError

logger = logging.getLogger(__name__)

RECEIPT_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <title>Order Receipt - {{ order_id }}</title>
  <meta charset="utf-8">
  <style>
    body { font-family: Arial, sans-serif; max-width: 800px; margin: 0 auto; padding: 20px; color: #333; }
    .header { text-align: center; border-bottom: 2px solid #333; padding-bottom: 20px; margin-bottom: 30px; }
    .order-id { font-size: 18px; font-weight: bold; color: #007bff; }
    .section { margin-bottom: 25px; }
    .section-title { font-size: 18px; font-weight: bold; border-bottom: 1px solid #eee; padding-bottom: 8px; }
    table { width: 100%; border-collapse: collapse; }
    th, td { padding: 12px; border: 1px solid #ddd; text-align: left; }
    .total { font-weight: bold; font-size: 18px; }
    .footer { margin-top: 30px; text-align: center; color: #666; font-size: 14px; }
  </style>
</head>
<body>
  <div class="header">
    <h1>ORDER RECEIPT</h1>
    <div class="order-id">Order ID: {{ order_id }}</div>
    <div>Date: {{ order_date }}</div>
  </div>

  <div class="section">
    <div class="section-title">Order Items</div>
    <table>
      <thead><tr><th>Product</th><th>Quantity</th><th>Price</th><th>Total</th></tr></thead>
      <tbody>
      {% for item in items %}
        <tr>
          <td>{{ item.name }}</td>
          <td>{{ item.quantity }}</td>
          <td>${{ '%.2f' | format(item.price) }}</td>
          <td>${{ '%.2f' | format(item.price * item.quantity) }}</td>
        </tr>
      {% endfor %}
      </tbody>
    </table>
  </div>

  <div class="section">
    <div class="section-title">Order Summary</div>
    <div>Items: ${{ '%.2f' | format(items_price) }}</div>
    <div>Tax: ${{ '%.2f' | format(tax_price) }}</div>
    <div>Shipping: ${{ '%.2f' | format(shipping_price) }}</div>
    <div class="total">Total: ${{ '%.2f' | format(total_price) }}</div>
  </div>

  <div class="section">
    <div class="section-title">Shipping Address</div>
    <div>{{ address.full_name }}</div>
    <div>{{ address.address }}</div>
    <div>{{ address.city }}{% if address.state %}, {{ address.state }}{% endif %} {{ address.zip_code }}</div>
    <div>{{ address.country }}</div>
  </div>

  <div class="section">
    <div class="section-title">Payment Information</div>
    <div>Method: {{ payment_method }}</div>
    <div>Status: {{ "Paid" if is_paid else "Not paid" }}{% if paid_at %} on {{ paid_at }}{% endif %}</div>
    {% if transaction_id %}<div>Transaction: {{ transaction_id }}</div>{% endif %}
  </div>

  <div class="footer">
    <p>Customer: {{ customer_name }} ({{ customer_email }})</p>
    <p>Thank you for shopping with us!</p>
  </div>
</body>
</html>
"""

MESSAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <title>{{ "Order Successful" if success else "Order Failed" }}</title>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>
    body { font-family: 'Segoe UI', Tahoma, sans-serif; display: flex; justify-content: center; padding: 40px; }
    .container { text-align: center; max-width: 500px; padding: 40px; border-top: 6px solid {{ "#28a745" if success else "#dc3545" }}; }
    .order-id { font-family: monospace; background: #f8f9fa; padding: 12px; display: inline-block; }
    .btn { display: inline-block; padding: 12px 24px; margin: 8px; border-radius: 6px; text-decoration: none; color: white; }
  </style>
</head>
<body>
  <div class="container">
    <h1>{{ "Order Confirmed!" if success else "Order Failed!" }}</h1>
    <div class="message">{{ message }}</div>
    {% if order_id %}
    <div class="order-id">Order ID: {{ order_id }}</div>
    <div class="actions">
      <a href="/api/receipt/{{ order_id }}/receipt" target="_blank" class="btn" style="background:#007bff">View Receipt in New Tab</a>
      <a href="/api/receipt/{{ order_id }}/receipt?download=true" class="btn" style="background:#28a745">Download PDF Receipt</a>
    </div>
    {% endif %}
    <a href="/" class="btn" style="background:#6c757d">Continue Shopping</a>
  </div>
</body>
</html>
"""

env = Environment(
    loader=DictLoader({"receipt.html": RECEIPT_TEMPLATE, "message.html": MESSAGE_TEMPLATE}),
    autoescape=select_autoescape(["html"]),
)


def default_message(kind: Optional[str]) -> str:
    return "Operation completed successfully" if kind == "success" else "Operation failed"


def message_page(kind: Optional[str], message: Optional[str], order_id: Optional[str]) -> str:
    return env.get_template("message.html").render(
        success=kind == "success", message=message or default_message(kind), order_id=order_id,
    )


def load_for(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch an order the caller may print: its owner or an admin."""
    order = orders.load_order(order_id)
    if user.get("role") != "admin" and not orders.is_owner(order, user):
        raise AuthorizationError("Not authorized to view this order", status_code=401)
    return order


def receipt_data(order: Dict[str, Any]) -> Dict[str, Any]:
    paid_at = database.as_utc(order.get("paid_at"))
    return {
        "orderId": str(order["_id"]),
        "orderDate": database.as_utc(order["created_at"]).strftime("%Y-%m-%d"),
        "orderItems": [
            {"name": i["name"], "quantity": i["quantity"], "price": i["price"],
             "total": f"{i['price'] * i['quantity']:.2f}"}
            for i in order["order_items"]
        ],
        "itemsPrice": order["items_price"],
        "taxPrice": order["tax_price"],
        "shippingPrice": order["shipping_price"],
        "totalPrice": order["total_price"],
        "shippingAddress": order["shipping_address"],
        "paymentMethod": order["payment_method"],
        "isPaid": order.get("is_paid", False),
        "paidAt": paid_at.strftime("%Y-%m-%d %H:%M:%S") if paid_at else None,
        "paymentResult": order.get("payment_result"),
    }


def render_html(order: Dict[str, Any], user: Dict[str, Any]) -> str:
    data = receipt_data(order)
    return env.get_template("receipt.html").render(
        order_id=data["orderId"],
        order_date=data["orderDate"],
        items=order["order_items"],
        items_price=order["items_price"],
        tax_price=order["tax_price"],
        shipping_price=order["shipping_price"],
        total_price=order["total_price"],
        address=order["shipping_address"],
        payment_method=order["payment_method"],
        is_paid=data["isPaid"],
        paid_at=data["paidAt"],
        transaction_id=(order.get("payment_result") or {}).get("id"),
        customer_name=user.get("name", ""),
        customer_email=user.get("email", ""),
    )


def render_pdf(html: str) -> bytes:
    try:
        response = httpx.post(
            config.PDF_RENDER_URL,
            files={"files": ("index.html", html.encode("utf-8"), "text/html")},
            timeout=config.PDF_RENDER_TIMEOUT,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("PDF rendering failed: %s", e)
        raise UpstreamError("Error generating receipt")
    return response.content


def customer_of(order: Dict[str, Any]) -> Dict[str, Any]:
    return database.db["user"].find_one(
        {"_id": database.object_id(order["user_id"], "User")}, {"name": 1, "email": 1},
    ) or {}
