import os
from decimal import Decimal

# ----- Storage -----
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orders.db")
SQLITE_BUSY_TIMEOUT_SECONDS = float(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "15"))

# ----- Collaborators (URLs from env, default to docker-compose service names) -----
RESTAURANT_SERVICE_URL = os.getenv("RESTAURANT_SERVICE_URL", "http://restaurant-service:8001")
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL", "http://notification-service:8004")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "5.0"))

# ----- Payment gateway (SumUp hosted checkout) -----
SUMUP_BASE_URL = os.getenv("SUMUP_BASE_URL", "https://api.sumup.com")
SUMUP_CLIENT_ID = os.getenv("SUMUP_CLIENT_ID", "")
SUMUP_CLIENT_SECRET = os.getenv("SUMUP_CLIENT_SECRET", "")
SUMUP_MERCHANT_EMAIL = os.getenv("SUMUP_MERCHANT_EMAIL", "")
SUMUP_CURRENCY = os.getenv("SUMUP_CURRENCY", "EUR")
FRONTEND_URL = os.getenv("FRONTEND_URL", "https://example.com")

# ----- Lifecycle policy -----
AUTO_ACCEPT_ORDERS = os.getenv("AUTO_ACCEPT_ORDERS", "false").lower() == "true"
AUTO_ACCEPT_MINUTES = int(os.getenv("AUTO_ACCEPT_MINUTES", "20"))
LOYALTY_POINTS_RATE = Decimal(os.getenv("LOYALTY_POINTS_RATE", "0.10"))
CHECKOUT_CLAIM_TTL_SECONDS = int(os.getenv("CHECKOUT_CLAIM_TTL_SECONDS", "60"))
