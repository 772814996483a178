"""Environment variable guardrail tests.

Required secrets fail fast with a message naming the variable; canonical
names win over legacy fallbacks.
"""

from unittest.mock import patch

import pytest

from nestlink_api.config import env
from nestlink_api.config.tables import Tables
from nestlink_api.errors import ConfigurationError


def test_signing_secret_required():
    with patch.dict("os.environ", {}, clear=True):
        with pytest.raises(ConfigurationError, match="ACCESS_REQUEST_SIGNING_SECRET"):
            env.get_signing_secret()


def test_form_secret_strips_whitespace():
    with patch.dict("os.environ", {"ACCESS_REQUEST_FORM_SECRET": "  s3cret \n"}, clear=True):
        assert env.get_form_secret() == "s3cret"


def test_captcha_secret_falls_back_to_form_secret():
    with patch.dict("os.environ", {"ACCESS_REQUEST_FORM_SECRET": "form"}, clear=True):
        assert env.get_captcha_secret() == "form"
    with patch.dict(
        "os.environ", {"ACCESS_REQUEST_FORM_SECRET": "form", "ACCESS_REQUEST_CAPTCHA_SECRET": "captcha"}, clear=True
    ):
        assert env.get_captcha_secret() == "captcha"
    with patch.dict("os.environ", {}, clear=True):
        assert env.get_captcha_secret() == ""


def test_base_url_required_in_production():
    with patch.dict("os.environ", {"NESTLINK_ENV": "production"}, clear=True):
        with pytest.raises(ConfigurationError, match="APP_BASE_URL"):
            env.get_app_base_url()


def test_base_url_prefers_canonical_and_strips_slash():
    with patch.dict("os.environ", {"APP_BASE_URL": "https://app.nestlink.rs/", "APP_URL": "https://legacy"}, clear=True):
        assert env.get_app_base_url() == "https://app.nestlink.rs"
    with patch.dict("os.environ", {}, clear=True):
        assert env.get_app_base_url() == "http://localhost:3000"


@pytest.mark.parametrize("raw", ["abc", "0", "-5"])
def test_link_ttl_rejects_bad_values(raw):
    with patch.dict("os.environ", {"ACCESS_REQUEST_LINK_TTL_SECONDS": raw}, clear=True):
        with pytest.raises(ConfigurationError):
            env.get_link_ttl_seconds()


def test_link_ttl_default_is_48_hours():
    with patch.dict("os.environ", {}, clear=True):
        assert env.get_link_ttl_seconds() == 48 * 3600


def test_seat_sync_concurrency_floor():
    with patch.dict("os.environ", {"SEAT_SYNC_CONCURRENCY": "0"}, clear=True):
        assert env.get_seat_sync_concurrency() == 1
    with patch.dict("os.environ", {"SEAT_SYNC_CONCURRENCY": "many"}, clear=True):
        with pytest.raises(ConfigurationError):
            env.get_seat_sync_concurrency()


def test_polar_base_url_follows_env():
    with patch.dict("os.environ", {}, clear=True):
        assert env.get_polar_settings()["base_url"] == "https://sandbox-api.polar.sh"
    with patch.dict("os.environ", {"POLAR_ENV": "production"}, clear=True):
        assert env.get_polar_settings()["base_url"] == "https://api.polar.sh"


def test_recaptcha_project_falls_back_to_gcloud_project():
    with patch.dict("os.environ", {"GCLOUD_PROJECT": "nestlink-prod"}, clear=True):
        settings = env.get_recaptcha_settings()
    assert settings["project_id"] == "nestlink-prod"
    assert settings["action"] == "access_request"
    assert settings["min_score"] == 0.3


def test_table_names_overridable():
    with patch.dict("os.environ", {"NESTLINK_TBL_TENANTS": "tblTenantsV2"}, clear=True):
        tables = Tables.from_env()
    assert tables.tenants == "tblTenantsV2"
    assert tables.clients == "tblClients"
