import os

APP_ENV = os.getenv("APP_ENV", "development").lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "standard")

BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Asia/Kolkata")

STOCK_SUMMARY_KEY = "current"
STOCK_SUMMARY_DATA_VERSION = "1.0"
STOCK_SUMMARY_DEFAULT_LIMIT = int(os.getenv("STOCK_SUMMARY_DEFAULT_LIMIT", "100"))
STOCK_SUMMARY_MAX_LIMIT = int(os.getenv("STOCK_SUMMARY_MAX_LIMIT", "1000"))
DAYBOOK_LOAN_TERM_MONTHS = int(os.getenv("DAYBOOK_LOAN_TERM_MONTHS", "12"))


def is_production() -> bool:
    return APP_ENV == "production"
