import os
import logging
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

# Mandatory environment variables for production
REQUIRED_PRODUCTION_ENV_VARS = [
    "SECRET_KEY",
    "DATABASE_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
]


def validate_env():
    """
    Validate critical environment variables before settings are built.
    Development only warns; production refuses to start.
    """
    is_production = os.getenv("PRODUCTION", "false").lower() == "true"

    secret_key = os.getenv("SECRET_KEY")
    if not secret_key:
        if is_production:
            raise ImproperlyConfigured("CRITICAL: SECRET_KEY is required in production.")
        logger.warning("SECRET_KEY not set, using insecure default for development.")

    if not is_production:
        if not os.getenv("STRIPE_SECRET_KEY"):
            logger.warning("STRIPE_SECRET_KEY not set; payment and subscription calls will fail.")
        return

    missing = [var for var in REQUIRED_PRODUCTION_ENV_VARS if not os.getenv(var)]
    if missing:
        error_msg = f"CRITICAL: Missing required environment variables in production: {', '.join(missing)}"
        logger.critical(error_msg)
        raise ImproperlyConfigured(error_msg)

    if secret_key.startswith("django-insecure") or len(secret_key) < 50:
        error_msg = "CRITICAL: SECRET_KEY must be a long, secure string in production"
        logger.critical(error_msg)
        raise ImproperlyConfigured(error_msg)

    if os.getenv("BILLING_EMAIL_TRANSPORT") == "sendgrid" and not os.getenv("SENDGRID_API_KEY"):
        error_msg = "CRITICAL: SENDGRID_API_KEY is required when BILLING_EMAIL_TRANSPORT=sendgrid"
        logger.critical(error_msg)
        raise ImproperlyConfigured(error_msg)

    logger.info("Environment validation passed successfully")
