"""Translations for transactional email.

``MessageCatalog`` is constructed explicitly and passed to the template
builders; there is no module-level translation engine.
"""

from typing import Mapping, Optional

DEFAULT_LOCALE = "en"

_EN = {
    "access_request.subject": "New access request from {name}",
    "access_request.intro": "A new access request was submitted.",
    "access_request.name": "Name",
    "access_request.email": "Email",
    "access_request.message": "Message",
    "access_request.building": "Building",
    "access_request.apartment": "Apartment",
    "access_request.approve": "Approve and create tenant account",
    "access_request.reject": "Reject request",
    "access_request.expiry": "These links expire in {hours} hours.",
    "approved.subject": "Your Nest Link account is ready",
    "approved.greeting": "Hi {name},",
    "approved.greeting_fallback": "there",
    "approved.intro": "Your Nest Link tenant account has been created. Use the details below to sign in:",
    "approved.email": "Email",
    "approved.password": "Temporary password",
    "approved.cta": "Go to login",
    "approved.security": "For security, please sign in and change your password right away.",
    "denied.subject": "Your Nest Link access request",
    "denied.body": "Your request for access was not approved. If you believe this is a mistake, contact your building manager.",
    "ending.subject": "Your Nest Link subscription ends in {days} day(s)",
    "ending.body": "Your subscription will end in {days} day(s). Renew it to keep access for you and your tenants.",
}

_RS = {
    "access_request.subject": "Novi zahtev za pristup od {name}",
    "access_request.intro": "Podnet je novi zahtev za pristup.",
    "access_request.name": "Ime",
    "access_request.email": "Email",
    "access_request.message": "Poruka",
    "access_request.building": "Zgrada",
    "access_request.apartment": "Stan",
    "access_request.approve": "Odobri i kreiraj nalog stanara",
    "access_request.reject": "Odbij zahtev",
    "access_request.expiry": "Linkovi ističu za {hours} sati.",
    "approved.subject": "Vaš Nest Link nalog je spreman",
    "approved.greeting": "Zdravo {name},",
    "approved.greeting_fallback": "",
    "approved.intro": "Vaš Nest Link nalog stanara je kreiran. Prijavite se sa sledećim podacima:",
    "approved.email": "Email",
    "approved.password": "Privremena lozinka",
    "approved.cta": "Idi na prijavu",
    "approved.security": "Iz bezbednosnih razloga, prijavite se i odmah promenite lozinku.",
    "denied.subject": "Vaš Nest Link zahtev za pristup",
    "denied.body": "Vaš zahtev za pristup nije odobren. Ako mislite da je u pitanju greška, obratite se upravniku zgrade.",
    "ending.subject": "Vaša Nest Link pretplata ističe za {days} dan(a)",
    "ending.body": "Vaša pretplata ističe za {days} dan(a). Obnovite je da biste zadržali pristup za sebe i stanare.",
}


class MessageCatalog:
    """Locale -> key -> template string, with English fallback."""

    def __init__(self, catalogs: Optional[Mapping[str, Mapping[str, str]]] = None, default_locale: str = DEFAULT_LOCALE):
        self._catalogs = dict(catalogs) if catalogs is not None else {"en": _EN, "rs": _RS}
        self.default_locale = default_locale

    @property
    def locales(self) -> list[str]:
        return sorted(self._catalogs)

    def t(self, locale: Optional[str], key: str, **params: object) -> str:
        catalog = self._catalogs.get(locale or "", {})
        template = catalog.get(key) or self._catalogs.get(self.default_locale, {}).get(key, key)
        return template.format(**params) if params else template
