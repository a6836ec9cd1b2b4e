import logging
import os

import pytest
from django.core.exceptions import ImproperlyConfigured
from django.http import HttpResponse
from django.test import RequestFactory

from billingdesk import settings as project_settings
from billingdesk.env_validation import validate_env
from billingdesk.middleware import RequestIDFilter, RequestIDMiddleware, get_current_request_id

SECURE_KEY = "k" * 64


class TestRequestIDMiddleware:
    def test_generates_and_echoes_request_id(self):
        seen = {}

        def view(request):
            seen["request"] = request.request_id
            seen["thread"] = get_current_request_id()
            return HttpResponse("ok")

        response = RequestIDMiddleware(view)(RequestFactory().get("/"))

        assert response["X-Request-ID"] == seen["request"] == seen["thread"]
        assert get_current_request_id() == "no-id"

    def test_keeps_incoming_request_id(self):
        request = RequestFactory().get("/", HTTP_X_REQUEST_ID="req-123")
        response = RequestIDMiddleware(lambda r: HttpResponse())(request)
        assert response["X-Request-ID"] == "req-123"

    def test_filter_stamps_records(self):
        record = logging.LogRecord("billing", logging.INFO, __file__, 1, "hello", None, None)
        assert RequestIDFilter().filter(record) is True
        assert record.request_id == "no-id"


class TestValidateEnv:
    @pytest.fixture
    def production(self, monkeypatch):
        monkeypatch.setenv("PRODUCTION", "true")
        monkeypatch.setenv("SECRET_KEY", SECURE_KEY)
        monkeypatch.setenv("DATABASE_URL", "postgres://billing@localhost/billing")
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_live_123")
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_123")
        monkeypatch.delenv("BILLING_EMAIL_TRANSPORT", raising=False)
        return monkeypatch

    def test_development_only_warns(self, monkeypatch, caplog):
        monkeypatch.setenv("PRODUCTION", "false")
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

        validate_env()

        assert "STRIPE_SECRET_KEY not set" in caplog.text

    def test_production_passes(self, production):
        validate_env()

    def test_missing_stripe_secret(self, production):
        production.delenv("STRIPE_WEBHOOK_SECRET")
        with pytest.raises(ImproperlyConfigured, match="STRIPE_WEBHOOK_SECRET"):
            validate_env()

    def test_insecure_secret_key(self, production):
        production.setenv("SECRET_KEY", "django-insecure-dev-only-change-in-production")
        with pytest.raises(ImproperlyConfigured, match="SECRET_KEY"):
            validate_env()

    def test_sendgrid_requires_api_key(self, production):
        production.setenv("BILLING_EMAIL_TRANSPORT", "sendgrid")
        production.delenv("SENDGRID_API_KEY", raising=False)
        with pytest.raises(ImproperlyConfigured, match="SENDGRID_API_KEY"):
            validate_env()


@pytest.mark.skipif("PDF_STORAGE_PATH" in os.environ, reason="PDF_STORAGE_PATH is set in the environment")
def test_pdfs_default_to_uploads_directory():
    assert project_settings.PDF_STORAGE_PATH == str(project_settings.BASE_DIR / "uploads" / "pdfs")
