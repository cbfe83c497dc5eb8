import os
from decimal import Decimal

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/pos_db")
GENERATE_SCHEMAS = os.getenv("GENERATE_SCHEMAS", "true").lower() in ("1", "true", "yes")

# Application Metadata
PROJECT_NAME = "Restaurant POS Money & Stock Core"
VERSION = "1.0.0"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Money: line-level JOD precision is 3 dp, customer-facing totals are 1 dp
MONEY_PLACES = Decimal("0.001")
DISPLAY_PLACES = Decimal("0.1")
MONEY_TOLERANCE = Decimal(os.getenv("MONEY_TOLERANCE", "0.001"))

# Quantities are fractional (kg, L); stored with 6 dp
QTY_PLACES = Decimal("0.000001")

# Must match the payment method constraint on the payments table
ALLOWED_PAYMENT_METHODS = tuple(
    m.strip() for m in os.getenv(
        "ALLOWED_PAYMENT_METHODS",
        "cash,visa,cliq,zain_cash,orange_money,umniah_wallet",
    ).split(",") if m.strip()
)
CASH_METHOD = "cash"

AUDIT_WARNINGS_LIMIT = int(os.getenv("AUDIT_WARNINGS_LIMIT", 10)) # Negative-stock warnings kept per audit row
