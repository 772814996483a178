"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

import asyncio
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from nestlink_api.access_requests.models import AccessRequest
from nestlink_api.access_requests.nonce_store import RedisNonceStore
from nestlink_api.access_requests.service import AccessRequestService, AccessRequestSettings
from nestlink_api.access_requests.signing import AccessLinkSigner
from nestlink_api.email.i18n import MessageCatalog
from nestlink_api.errors import UpstreamError, ValidationError
from nestlink_api.main import create_app

SIGNING_SECRET = "test-signing-secret"
FORM_SECRET = "test-form-secret"
ADMIN_EMAIL = "admin@nestlink.test"
BASE_URL = "https://app.nestlink.test"


# ============================================================================
# In-memory doubles
# ============================================================================


class InMemoryAccessRequestRepository:
    """Dict-backed stand-in with the same conditional-update semantics."""

    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}
        self.owner_emails: dict[str, str] = {}
        self.transitions: list[tuple[str, str, str]] = []

    def add(self, **fields: Any) -> AccessRequest:
        row = {
            "id": str(uuid.uuid4()),
            "name": "Ana Tenant",
            "email": "ana@example.com",
            "message": "",
            "building_id": "b-1",
            "building_label": "Main St 1",
            "apartment_id": "a-7",
            "apartment_label": "7",
            "status": "pending",
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        row.update(fields)
        self.rows[row["id"]] = row
        return AccessRequest.from_row(row)

    async def create(self, fields: dict[str, Any]) -> AccessRequest:
        return self.add(**{**fields, "status": "pending"})

    async def get(self, access_request_id: str) -> Optional[AccessRequest]:
        row = self.rows.get(access_request_id)
        return AccessRequest.from_row(row) if row else None

    async def transition(self, access_request_id: str, from_status: str, to_status: str, **fields: Any):
        row = self.rows.get(access_request_id)
        if row is None or row["status"] != from_status:
            return None
        row.update(fields)
        row["status"] = to_status
        self.transitions.append((access_request_id, from_status, to_status))
        return AccessRequest.from_row(row)

    async def set_user_id(self, access_request_id: str, user_id: str) -> None:
        self.rows[access_request_id]["user_id"] = user_id

    async def building_owner_email(self, building_id: str) -> Optional[str]:
        return self.owner_emails.get(building_id)


class FakeProvisioner:
    def __init__(self):
        self.users: dict[str, dict[str, Any]] = {}
        self.tenants: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.fail_create_user = False
        self.fail_create_tenant = False
        # Seconds to stall after committing the user, before returning its id
        self.hang_after_create: Optional[float] = None

    async def create_user(self, *, email: str, password: str, name: str, access_request_id: str) -> str:
        if self.fail_create_user:
            raise UpstreamError("Failed to create user: email exists", provider="supabase_auth")
        if any(user["email"] == email for user in self.users.values()):
            raise UpstreamError("Failed to create user: already registered", provider="supabase_auth")
        user_id = f"user-{len(self.users) + len(self.deleted) + 1}"
        self.users[user_id] = {
            "email": email,
            "password": password,
            "name": name,
            "access_request_id": access_request_id,
        }
        if self.hang_after_create is not None:
            await asyncio.sleep(self.hang_after_create)
        return user_id

    async def find_user_id(self, *, email: str, access_request_id: str) -> Optional[str]:
        for user_id, user in self.users.items():
            if user["email"] == email and user["access_request_id"] == access_request_id:
                return user_id
        return None

    async def delete_user(self, user_id: str) -> None:
        self.deleted.append(user_id)
        self.users.pop(user_id, None)

    async def create_tenant(self, *, user_id: str, request: AccessRequest) -> dict[str, Any]:
        if self.fail_create_tenant:
            raise UpstreamError("Failed to create tenant", provider="supabase")
        row = {"user_id": user_id, "email": request.email, "apartment_id": request.apartment_id}
        self.tenants.append(row)
        return row


class RecordingEmailSender:
    def __init__(self, failures: int = 0):
        self.sent: list[dict[str, Any]] = []
        self.attempts = 0
        self.failures = failures

    async def send(self, to, message, *, idempotency_key=None):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise UpstreamError("Email send failed with status 500", provider="resend")
        self.sent.append({"to": list(to), "message": message, "idempotency_key": idempotency_key})
        return f"msg-{len(self.sent)}"


class StubRecaptcha:
    """Accepts every token except ``"bad-token"``."""

    def __init__(self):
        self.tokens: list[str] = []

    async def verify(self, token: str) -> float:
        self.tokens.append(token)
        if token == "bad-token":
            raise ValidationError("Captcha invalid: INVALID", code="captcha_invalid")
        return 0.9


class RecordingActionLog:
    def __init__(self):
        self.entries: list[dict[str, Any]] = []

    async def record(self, action, *, status, type, payload=None, error="", duration_ms=0, user_id=None):
        self.entries.append({"action": action, "status": status, "type": type, "payload": payload, "error": error})


class FakeRedis:
    """The subset of redis.Redis used by RedisNonceStore."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def exists(self, key: str) -> int:
        return 1 if key in self.values else 0

    def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def ping(self) -> bool:
        return True


class FakeQuery:
    """Chainable stand-in for a postgrest request builder."""

    CHAIN_METHODS = frozenset({"select", "eq", "in_", "limit", "order", "update", "insert", "delete"})

    def __init__(self, owner: "FakeSupabase", table: str):
        self.owner = owner
        self.table = table
        self.calls: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        if name not in self.CHAIN_METHODS:
            raise AttributeError(name)

        def chain(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return chain

    async def execute(self):
        self.owner.executed.append((self.table, self.calls))
        result = self.owner.responses.get(self.table)
        if isinstance(result, Exception):
            raise result
        if callable(result):
            result = result(self.calls)
        if isinstance(result, SimpleNamespace):
            return result
        return SimpleNamespace(data=result or [], count=None)


class FakeAdminAuth:
    """The subset of ``auth.admin`` used by TenantProvisioner."""

    def __init__(self):
        self.users: dict[str, SimpleNamespace] = {}
        self.deleted: list[str] = []

    async def create_user(self, attributes: dict[str, Any]):
        user = SimpleNamespace(
            id=f"auth-user-{len(self.users) + len(self.deleted) + 1}",
            email=attributes["email"],
            user_metadata=attributes.get("user_metadata") or {},
        )
        self.users[user.id] = user
        return SimpleNamespace(user=user)

    async def delete_user(self, user_id: str) -> None:
        self.deleted.append(user_id)
        self.users.pop(user_id, None)

    async def list_users(self, page: int = 1, per_page: int = 50):
        users = list(self.users.values())
        return users[(page - 1) * per_page : page * per_page]


class FakeAuth:
    def __init__(self):
        self.users: dict[str, Any] = {}
        self.error: Optional[Exception] = None
        self.sign_outs = 0
        self.admin = FakeAdminAuth()

    async def sign_out(self) -> None:
        self.sign_outs += 1

    async def get_user(self, token: str):
        if self.error is not None:
            raise self.error
        user = self.users.get(token)
        return SimpleNamespace(user=user) if user else None


class FakeSupabase:
    """The subset of supabase ``AsyncClient`` used by repositories.

    ``responses`` maps table -> rows, a SimpleNamespace(data, count),
    a callable taking the recorded calls, or an exception to raise.
    """

    def __init__(self):
        self.responses: dict[str, Any] = {}
        self.executed: list[tuple[str, list]] = []
        self.auth = FakeAuth()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def calls_for(self, table: str) -> list[list[tuple[str, tuple, dict]]]:
        return [calls for name, calls in self.executed if name == table]


class FakeClock:
    def __init__(self, now: float = 1_760_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signer(clock: FakeClock) -> AccessLinkSigner:
    return AccessLinkSigner(SIGNING_SECRET, ttl_seconds=48 * 3600, base_url=BASE_URL, clock=clock)


@pytest.fixture
def repository() -> InMemoryAccessRequestRepository:
    return InMemoryAccessRequestRepository()


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def action_log() -> RecordingActionLog:
    return RecordingActionLog()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def settings() -> AccessRequestSettings:
    return AccessRequestSettings(
        form_secret=FORM_SECRET,
        admin_email=ADMIN_EMAIL,
        base_url=BASE_URL,
        timeout=2.0,
        captcha_secret="test-captcha-secret",
    )


@pytest.fixture
def service(
    repository, provisioner, signer, fake_redis, email_sender, action_log, settings
) -> AccessRequestService:
    return AccessRequestService(
        repository=repository,
        provisioner=provisioner,
        signer=signer,
        nonce_store=RedisNonceStore(fake_redis),
        recaptcha=StubRecaptcha(),
        email_sender=email_sender,
        catalog=MessageCatalog(),
        action_log=action_log,
        settings=settings,
    )


@pytest.fixture
def app(service, fake_redis):
    """Application with doubles on ``app.state`` and no startup wiring."""
    application = create_app(build_state=False)
    application.state.access_request_service = service
    application.state.redis = fake_redis
    application.state.captcha_secret = "test-captcha-secret"
    application.state.cron_secret = None
    return application


@pytest.fixture
def client(app) -> TestClient:
    """Create test client."""
    return TestClient(app)
