"""Tests for email templates, translations and the Resend sender."""

import json

import httpx
import pytest

from nestlink_api.email.i18n import MessageCatalog
from nestlink_api.email.messages import (
    EmailMessage,
    build_access_approved_email,
    build_access_denied_email,
    build_access_request_email,
    build_subscription_ending_email,
)
from nestlink_api.email.sender import RESEND_SEND_URL, ResendEmailSender
from nestlink_api.errors import ConfigurationError, UpstreamError

MESSAGE = EmailMessage(subject="Hello", html="<p>Hello</p>", text="Hello")


@pytest.fixture
def catalog() -> MessageCatalog:
    return MessageCatalog()


def test_catalog_falls_back_to_english(catalog) -> None:
    assert catalog.t("rs", "approved.cta") == "Idi na prijavu"
    assert catalog.t("de", "approved.cta") == "Go to login"
    assert catalog.t(None, "ending.subject", days=3) == "Your Nest Link subscription ends in 3 day(s)"
    assert catalog.t("en", "missing.key") == "missing.key"


def test_access_request_email_escapes_user_input(catalog) -> None:
    message = build_access_request_email(
        catalog,
        locale="en",
        name="<script>alert(1)</script>",
        email="ana@example.com",
        approve_link="https://app.test/approve?payload=a&sig=b",
        reject_link="https://app.test/approve?payload=c&sig=d",
        link_ttl_hours=48,
        message="Hi & thanks",
        building="Main St 1",
        apartment="7",
    )

    assert "<script>" not in message.html
    assert "&lt;script&gt;" in message.html
    assert "Hi &amp; thanks" in message.html
    assert 'href="https://app.test/approve?payload=a&amp;sig=b"' in message.html
    assert "These links expire in 48 hours." in message.html
    assert message.subject == "New access request from <script>alert(1)</script>"
    assert "for Main St 1, apartment 7" in message.text


def test_access_request_email_omits_empty_rows(catalog) -> None:
    message = build_access_request_email(
        catalog,
        locale="en",
        name="Ana",
        email="ana@example.com",
        approve_link="https://a",
        reject_link="https://r",
        link_ttl_hours=48,
    )
    assert "Message" not in message.html
    assert "Building" not in message.html


def test_approved_email_carries_credentials(catalog) -> None:
    message = build_access_approved_email(
        catalog,
        locale="rs",
        name="Ana",
        email="ana@example.com",
        password="p<w>d",
        login_url="https://app.test/auth/login",
    )
    assert message.subject == "Vaš Nest Link nalog je spreman"
    assert "<code>p&lt;w&gt;d</code>" in message.html
    assert 'href="https://app.test/auth/login"' in message.html
    assert "p<w>d" in message.text


def test_denied_email(catalog) -> None:
    message = build_access_denied_email(catalog, locale="en", name="")
    assert message.html.startswith("<p>Hi there,</p>")


def test_subscription_ending_email(catalog) -> None:
    message = build_subscription_ending_email(catalog, locale="en", days_remaining=7)
    assert "7 day(s)" in message.subject
    assert message.text == message.html[3:-4]


def _sender(handler, api_key: str = "re_test") -> ResendEmailSender:
    return ResendEmailSender(api_key=api_key, from_email="Nest Link <noreply@nestlink.test>", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_resend_send_success() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_123"})

    message_id = await _sender(handler).send(["ana@example.com", ""], MESSAGE, idempotency_key="access-request-1")

    assert message_id == "msg_123"
    request = seen[0]
    assert str(request.url) == RESEND_SEND_URL
    assert request.headers["Authorization"] == "Bearer re_test"
    assert request.headers["Idempotency-Key"] == "access-request-1"
    body = json.loads(request.content)
    assert body["to"] == ["ana@example.com"]
    assert body["subject"] == "Hello"


@pytest.mark.asyncio
async def test_resend_idempotent_replay_is_success() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"name": "concurrent_idempotent_requests"})

    assert await _sender(handler).send(["ana@example.com"], MESSAGE, idempotency_key="k") is None


@pytest.mark.asyncio
async def test_resend_conflict_without_key_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={})

    with pytest.raises(UpstreamError):
        await _sender(handler).send(["ana@example.com"], MESSAGE)


@pytest.mark.asyncio
async def test_resend_server_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    with pytest.raises(UpstreamError) as exc_info:
        await _sender(handler).send(["ana@example.com"], MESSAGE)
    assert exc_info.value.message == "Email send failed with status 500"
    assert exc_info.value.provider == "resend"


@pytest.mark.asyncio
async def test_resend_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(UpstreamError) as exc_info:
        await _sender(handler).send(["ana@example.com"], MESSAGE)
    assert exc_info.value.code == "upstream_timeout"


@pytest.mark.asyncio
async def test_resend_requires_api_key() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(ConfigurationError):
        await _sender(handler, api_key="").send(["ana@example.com"], MESSAGE)


@pytest.mark.asyncio
async def test_resend_requires_recipients() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(UpstreamError, match="No email recipients"):
        await _sender(handler).send([""], MESSAGE)
