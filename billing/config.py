import os

import certifi
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _mongo_uri():
    uri = os.getenv("MONGO_URI", "")
    # Atlas URIs in .env end with "tlsCAFile=" and expect the certifi bundle path
    if uri.endswith("tlsCAFile="):
        uri += certifi.where()
    return uri


class Config:
    MONGO_URI = _mongo_uri()
    MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "clinicBilling")
    DEFAULT_CLINIC_ID = os.getenv("DEFAULT_CLINIC_ID") or None

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY") or None
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET") or None
    CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")
    INVOICE_DUE_DAYS = int(os.getenv("INVOICE_DUE_DAYS", "30"))

    AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
    SES_SENDER = os.getenv("SES_SENDER") or None

    APP_URL = os.getenv("APP_URL", "http://localhost:5000")
    CLINIC_NAME = os.getenv("CLINIC_NAME", "EON Medical")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(Config, key):
                raise KeyError(f"Unknown config key: {key}")
            setattr(self, key, value)
