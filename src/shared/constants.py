"""Shared constants across the application."""

# Upstream listing resources, in the order a full sync must walk them
CUSTOMERS = "customers"
PRODUCTS = "products"
ORDERS = "orders"
WEBHOOKS = "webhooks"

SYNC_RESOURCES = [CUSTOMERS, PRODUCTS, ORDERS]

# Webhook topics
ORDER_TOPICS = {"orders/create", "orders/updated", "orders/paid"}
CUSTOMER_TOPICS = {"customers/create", "customers/update"}
PRODUCT_TOPICS = {"products/create", "products/update"}
CART_TOPICS = {"carts/update", "checkouts/create", "checkouts/update"}

DEFAULT_WEBHOOK_TOPICS = [
    "orders/create",
    "orders/updated",
    "customers/create",
    "customers/update",
    "products/create",
    "products/update",
    "carts/update",
    "checkouts/update",
]

# Event types
EVENT_CART_ABANDONED = "cart_abandoned"

# Upstream request headers
ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"
TOPIC_HEADER = "X-Shopify-Topic"
HMAC_HEADER = "X-Shopify-Hmac-Sha256"

# Pagination
DEFAULT_PAGE_SIZE = 250
MAX_PAGE_SIZE = 250
MAX_PAGES = 20

# Sync status values
SYNC_RUNNING = "running"
SYNC_IDLE = "idle"
SYNC_ERROR = "error"
SYNC_SKIPPED = "skipped"
