"""Transactional email templates.

Every interpolated value is HTML-escaped; links are escaped as attribute
values. Builders return ``EmailMessage`` so the sender stays template-agnostic.
"""

from dataclasses import dataclass
from html import escape
from typing import Optional

from nestlink_api.email.i18n import MessageCatalog


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    html: str
    text: str


def build_access_request_email(
    catalog: MessageCatalog,
    *,
    locale: str,
    name: str,
    email: str,
    approve_link: str,
    reject_link: str,
    link_ttl_hours: int,
    message: str = "",
    building: Optional[str] = None,
    apartment: Optional[str] = None,
) -> EmailMessage:
    t = lambda key, **kw: catalog.t(locale, key, **kw)  # noqa: E731

    rows = [
        (t("access_request.name"), name),
        (t("access_request.email"), email),
    ]
    if message:
        rows.append((t("access_request.message"), message))
    if building:
        rows.append((t("access_request.building"), building))
    if apartment:
        rows.append((t("access_request.apartment"), apartment))

    items = "".join(f"<li><strong>{escape(label)}:</strong> {escape(value)}</li>" for label, value in rows)
    html = (
        f"<p>{escape(t('access_request.intro'))}</p>"
        f"<ul>{items}</ul>"
        f'<p><a href="{escape(approve_link, quote=True)}">{escape(t("access_request.approve"))}</a></p>'
        f'<p><a href="{escape(reject_link, quote=True)}">{escape(t("access_request.reject"))}</a></p>'
        f"<p>{escape(t('access_request.expiry', hours=link_ttl_hours))}</p>"
    )

    location = ""
    if building:
        location += f" for {building}"
    if apartment:
        location += f", apartment {apartment}"
    text = f"{name} ({email}) requested access{location}. Approve: {approve_link} / Reject: {reject_link}"

    return EmailMessage(subject=t("access_request.subject", name=name), html=html, text=text)


def build_access_approved_email(
    catalog: MessageCatalog,
    *,
    locale: str,
    name: str,
    email: str,
    password: str,
    login_url: str,
) -> EmailMessage:
    t = lambda key, **kw: catalog.t(locale, key, **kw)  # noqa: E731

    display_name = name or t("approved.greeting_fallback")
    html = (
        f"<p>{escape(t('approved.greeting', name=display_name))}</p>"
        f"<p>{escape(t('approved.intro'))}</p>"
        "<ul>"
        f"<li><strong>{escape(t('approved.email'))}:</strong> {escape(email)}</li>"
        f"<li><strong>{escape(t('approved.password'))}:</strong> <code>{escape(password)}</code></li>"
        "</ul>"
        f'<p><a href="{escape(login_url, quote=True)}" target="_blank" rel="noopener noreferrer">'
        f"{escape(t('approved.cta'))}</a></p>"
        f"<p>{escape(t('approved.security'))}</p>"
    )
    text = (
        f"Hi {name or 'there'}, your tenant account is ready. Login: {login_url} "
        f"with email {email} and password {password}. Please change your password after logging in."
    )
    return EmailMessage(subject=t("approved.subject"), html=html, text=text)


def build_access_denied_email(catalog: MessageCatalog, *, locale: str, name: str) -> EmailMessage:
    greeting = catalog.t(locale, "approved.greeting", name=name or catalog.t(locale, "approved.greeting_fallback"))
    body = catalog.t(locale, "denied.body")
    return EmailMessage(
        subject=catalog.t(locale, "denied.subject"),
        html=f"<p>{escape(greeting)}</p><p>{escape(body)}</p>",
        text=f"{greeting} {body}",
    )


def build_subscription_ending_email(catalog: MessageCatalog, *, locale: str, days_remaining: int) -> EmailMessage:
    body = catalog.t(locale, "ending.body", days=days_remaining)
    return EmailMessage(
        subject=catalog.t(locale, "ending.subject", days=days_remaining),
        html=f"<p>{escape(body)}</p>",
        text=body,
    )
