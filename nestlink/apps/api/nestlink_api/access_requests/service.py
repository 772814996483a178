"""Access request workflow.

submit:
1. Form secret + reCAPTCHA checks
2. Store the request (status=pending)
3. Email signed approve/reject links to the administrator and the
   building owner

resolve (signed link clicked):
1. Verify signature, expiry and action binding; no mutation on failure
2. Already-used nonce or non-pending status -> idempotent success
3. Claim the request with a conditional status update (pending -> approved
   or pending -> rejected); losing the race is also idempotent success
4. Approve only: create the auth user and tenant row; any failure deletes
   the partial user and rolls the status back to pending
5. Consume the nonce, then email the requester

Every store, provider and email call is bounded by ``timeout`` seconds so a
hung upstream cannot hold the HTTP response open.
"""

import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Awaitable, Optional, TypeVar

from nestlink_api.access_requests.captcha import verify_captcha
from nestlink_api.access_requests.models import (
    AccessRequest,
    AccessRequestSubmission,
    ResolutionOutcome,
)
from nestlink_api.access_requests.nonce_store import RedisNonceStore
from nestlink_api.access_requests.recaptcha import RecaptchaVerifier
from nestlink_api.access_requests.repository import AccessRequestRepository, TenantProvisioner
from nestlink_api.access_requests.signing import AccessLinkSigner, VerifiedLink
from nestlink_api.audit.server_log import ActionLog
from nestlink_api.context import access_request_id_var
from nestlink_api.email.i18n import MessageCatalog
from nestlink_api.email.messages import (
    EmailMessage,
    build_access_approved_email,
    build_access_denied_email,
    build_access_request_email,
)
from nestlink_api.email.sender import EmailSender
from nestlink_api.errors import (
    ConfigurationError,
    NestLinkError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from nestlink_api.utils.sanitize import mask_email
from nestlink_api.utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMAIL_ATTEMPTS = 2


@dataclass(frozen=True)
class AccessRequestSettings:
    form_secret: str
    admin_email: str
    base_url: str
    timeout: float = 10.0
    default_password: Optional[str] = None
    locale: str = "rs"
    captcha_secret: str = ""

    @property
    def login_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/login"


def _clean(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


class AccessRequestService:
    def __init__(
        self,
        *,
        repository: AccessRequestRepository,
        provisioner: TenantProvisioner,
        signer: AccessLinkSigner,
        nonce_store: RedisNonceStore,
        recaptcha: RecaptchaVerifier,
        email_sender: EmailSender,
        catalog: MessageCatalog,
        action_log: ActionLog,
        settings: AccessRequestSettings,
    ):
        self.repository = repository
        self.provisioner = provisioner
        self.signer = signer
        self.nonce_store = nonce_store
        self.recaptcha = recaptcha
        self.email_sender = email_sender
        self.catalog = catalog
        self.action_log = action_log
        self.settings = settings

    async def _bounded(self, awaitable: Awaitable[T], operation: str, provider: str = "supabase") -> T:
        return await with_timeout(awaitable, self.settings.timeout, provider=provider, operation=operation)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, submission: AccessRequestSubmission) -> AccessRequest:
        """Store a new request and notify the approvers.

        Raises:
            ValidationError: missing fields, bad form secret, captcha rejected
            ConfigurationError: no administrator mailbox configured
            UpstreamError: store or email failure
        """
        started = time.perf_counter()

        missing = submission.missing_fields()
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", code="missing_fields")

        form_secret = _clean(submission.formSecret)
        if not self.settings.form_secret or not hmac.compare_digest(
            form_secret.encode("utf-8"), self.settings.form_secret.encode("utf-8")
        ):
            raise ValidationError("Invalid form secret", code="invalid_form_secret")

        await self._bounded(self.recaptcha.verify(_clean(submission.recaptchaToken)), "assessment", "recaptcha")

        captcha_token = _clean(submission.captchaToken)
        if captcha_token and not verify_captcha(
            self.settings.captcha_secret, captcha_token, _clean(submission.captchaAnswer)
        ):
            raise ValidationError("Invalid captcha", code="captcha_invalid")

        if not self.settings.admin_email:
            raise ConfigurationError("Admin email not configured")

        request = await self._bounded(
            self.repository.create(
                {
                    "name": _clean(submission.name),
                    "email": _clean(submission.email).lower(),
                    "message": _clean(submission.message),
                    "building_id": _clean(submission.buildingId),
                    "building_label": _clean(submission.buildingLabel) or None,
                    "apartment_id": _clean(submission.apartmentId),
                    "apartment_label": _clean(submission.apartmentLabel) or None,
                }
            ),
            "store access request",
        )
        access_request_id_var.set(request.id)

        recipients = [self.settings.admin_email]
        owner_email = await self._building_owner_email(request.building_id)
        if owner_email and owner_email.lower() not in {r.lower() for r in recipients}:
            recipients.append(owner_email)

        message = build_access_request_email(
            self.catalog,
            locale=self.settings.locale,
            name=request.name,
            email=request.email,
            message=request.message,
            building=request.building_label,
            apartment=request.apartment_label,
            approve_link=self.signer.issue(request.id, "approve"),
            reject_link=self.signer.issue(request.id, "reject"),
            link_ttl_hours=self.signer.ttl_seconds // 3600,
        )

        try:
            await self._bounded(
                self.email_sender.send(recipients, message, idempotency_key=f"access-request-{request.id}"),
                "send access request email",
                "resend",
            )
        except NestLinkError as e:
            await self.action_log.record(
                "Access request - notify approvers",
                status="fail",
                type="email",
                payload={"access_request_id": request.id},
                error=e.message,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            raise UpstreamError("Failed to send email", provider="resend") from e

        logger.info(
            "Access request submitted",
            extra={
                "event": "access_request.submitted",
                "requester": mask_email(request.email),
                "building_id": request.building_id,
                "apartment_id": request.apartment_id,
                "recipients": len(recipients),
            },
        )
        await self.action_log.record(
            "Access request - submitted",
            status="success",
            type="action",
            payload={"access_request_id": request.id, "building_id": request.building_id},
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return request

    async def _building_owner_email(self, building_id: Optional[str]) -> Optional[str]:
        if not building_id:
            return None
        try:
            return await self._bounded(self.repository.building_owner_email(building_id), "load building owner")
        except Exception as e:
            # Owner notification is optional; the administrator still gets the links
            logger.warning(
                "Failed to fetch building client email",
                extra={"event": "access_request.owner_lookup_failed", "building_id": building_id, "error": str(e)},
            )
            return None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, payload: str, sig: str, action: Optional[str] = None) -> ResolutionOutcome:
        """Apply a signed approve/reject link.

        Raises:
            MalformedLinkError / InvalidSignatureError / ExpiredLinkError /
            ActionMismatchError: link rejected, nothing changed
            NotFoundError: the signed request id does not exist
            UpstreamError: provisioning failed (status rolled back to pending)
        """
        link = self.signer.verify(payload, sig, action)
        access_request_id_var.set(link.access_request_id)

        if self.nonce_store.is_consumed(link.nonce):
            current = await self._bounded(self.repository.get(link.access_request_id), "load access request")
            logger.info(
                "Access link replayed",
                extra={"event": "access_request.link_replayed", "action": link.action},
            )
            return self._already_resolved(link, current)

        request = await self._bounded(self.repository.get(link.access_request_id), "load access request")
        if request is None:
            raise NotFoundError("Access request not found")

        if request.status != "pending":
            logger.info(
                "Access request already resolved",
                extra={"event": "access_request.already_resolved", "status": request.status, "action": link.action},
            )
            return self._already_resolved(link, request)

        if link.action == "reject":
            return await self._reject(link, request)
        return await self._approve(link, request)

    def _already_resolved(self, link: VerifiedLink, request: Optional[AccessRequest]) -> ResolutionOutcome:
        rejected = link.action == "reject" and request is not None and request.status == "rejected"
        return ResolutionOutcome(
            success=True,
            rejected=rejected,
            already_resolved=True,
            email=request.email if request else None,
            name=request.name if request else None,
        )

    async def _claim(self, link: VerifiedLink, to_status: str) -> Optional[AccessRequest]:
        return await self._bounded(
            self.repository.transition(link.access_request_id, "pending", to_status),
            "update access request status",
        )

    async def _lost_race(self, link: VerifiedLink) -> ResolutionOutcome:
        current = await self._bounded(self.repository.get(link.access_request_id), "load access request")
        logger.info(
            "Access request resolved concurrently",
            extra={"event": "access_request.claim_lost", "action": link.action},
        )
        return self._already_resolved(link, current)

    def _consume(self, link: VerifiedLink) -> None:
        self.nonce_store.consume(link.nonce, link.seconds_remaining(time.time()))

    async def _reject(self, link: VerifiedLink, request: AccessRequest) -> ResolutionOutcome:
        claimed = await self._claim(link, "rejected")
        if claimed is None:
            return await self._lost_race(link)
        self._consume(link)

        message = build_access_denied_email(self.catalog, locale=self.settings.locale, name=claimed.name)
        email_sent = await self._send_with_retry(claimed.email, message, f"access-denied-{claimed.id}")

        logger.info(
            "Access request rejected",
            extra={"event": "access_request.rejected", "requester": mask_email(claimed.email)},
        )
        await self.action_log.record(
            "Access request - rejected",
            status="success",
            type="action",
            payload={"access_request_id": claimed.id, "email_sent": email_sent},
        )
        return ResolutionOutcome(
            success=True,
            rejected=True,
            email=claimed.email,
            name=claimed.name,
            email_sent=email_sent,
        )

    def _temporary_password(self) -> str:
        return self.settings.default_password or secrets.token_urlsafe(12)

    async def _approve(self, link: VerifiedLink, request: AccessRequest) -> ResolutionOutcome:
        started = time.perf_counter()
        claimed = await self._claim(link, "approved")
        if claimed is None:
            return await self._lost_race(link)

        password = self._temporary_password()
        user_id: Optional[str] = None
        try:
            user_id = await self._bounded(
                self.provisioner.create_user(
                    email=claimed.email,
                    password=password,
                    name=claimed.name,
                    access_request_id=claimed.id,
                ),
                "create user",
                "supabase_auth",
            )
            await self._bounded(
                self.provisioner.create_tenant(user_id=user_id, request=claimed),
                "create tenant",
            )
        except Exception as e:
            cause = e if isinstance(e, NestLinkError) else UpstreamError(f"Provisioning failed: {e!r}")
            await self._roll_back(claimed, user_id, cause)
            await self.action_log.record(
                "Access request - provisioning failed",
                status="fail",
                type="action",
                payload={"access_request_id": claimed.id},
                error=cause.message,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            raise UpstreamError(cause.message, provider=getattr(cause, "provider", None)) from e

        try:
            await self._bounded(self.repository.set_user_id(claimed.id, user_id), "link provisioned user")
        except NestLinkError as e:
            logger.warning(
                "Provisioned user not linked to access request",
                extra={"event": "access_request.link_user_failed", "provisioned_user_id": user_id, "error": e.message},
            )

        self._consume(link)

        message = build_access_approved_email(
            self.catalog,
            locale=self.settings.locale,
            name=claimed.name,
            email=claimed.email,
            password=password,
            login_url=self.settings.login_url,
        )
        email_sent = await self._send_with_retry(claimed.email, message, f"access-approved-{claimed.id}")

        logger.info(
            "Access request approved",
            extra={
                "event": "access_request.approved",
                "requester": mask_email(claimed.email),
                "provisioned_user_id": user_id,
                "email_sent": email_sent,
            },
        )
        await self.action_log.record(
            "Access request - approved",
            status="success",
            type="action",
            payload={"access_request_id": claimed.id, "user_id": user_id, "email_sent": email_sent},
            duration_ms=int((time.perf_counter() - started) * 1000),
            user_id=user_id,
        )
        return ResolutionOutcome(
            success=True,
            rejected=False,
            email=claimed.email,
            name=claimed.name,
            email_sent=email_sent,
        )

    async def _roll_back(self, request: AccessRequest, user_id: Optional[str], cause: NestLinkError) -> None:
        """Undo a partial approval so the link can be used again."""
        if user_id is None:
            # create_user may have committed server side before failing here
            try:
                user_id = await self._bounded(
                    self.provisioner.find_user_id(email=request.email, access_request_id=request.id),
                    "look up user",
                    "supabase_auth",
                )
            except NestLinkError as e:
                logger.warning(
                    "Could not check for a partially created user",
                    extra={"event": "access_request.user_lookup_failed", "error": e.message},
                )
        if user_id:
            try:
                await self._bounded(self.provisioner.delete_user(user_id), "delete user", "supabase_auth")
            except NestLinkError as e:
                logger.error(
                    "Orphaned auth user after failed provisioning",
                    extra={"event": "access_request.orphaned_user", "provisioned_user_id": user_id, "error": e.message},
                )

        try:
            restored = await self._bounded(
                self.repository.transition(request.id, "approved", "pending"),
                "roll back access request status",
            )
        except NestLinkError as e:
            restored = None
            logger.critical(
                "Access request stuck in approved without an account",
                extra={"event": "access_request.rollback_failed", "error": e.message},
            )
        logger.error(
            "Access request provisioning failed",
            extra={
                "event": "access_request.provisioning_failed",
                "error": cause.message,
                "rolled_back": restored is not None,
            },
        )

    async def _send_with_retry(self, to: str, message: EmailMessage, idempotency_key: str) -> bool:
        for attempt in range(1, EMAIL_ATTEMPTS + 1):
            try:
                await self._bounded(
                    self.email_sender.send([to], message, idempotency_key=idempotency_key),
                    "send email",
                    "resend",
                )
                return True
            except ConfigurationError as e:
                logger.error("Email sender not configured", extra={"event": "email.not_configured", "error": e.message})
                return False
            except UpstreamError as e:
                logger.warning(
                    "Email send attempt failed",
                    extra={"event": "email.send.retry", "attempt": attempt, "error": e.message},
                )
        return False
