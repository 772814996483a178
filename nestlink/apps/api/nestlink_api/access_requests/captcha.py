"""Self-hosted image captcha for the public access-request form.

Token format: base64(``<json {"text", "ts"}>::<hex hmac-sha256>``). The
server keeps no state; the HMAC binds the expected answer and issue time.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Callable, Optional

CAPTCHA_TTL_MS = 1000 * 60 * 10
CAPTCHA_LENGTH = 5
CAPTCHA_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_WIDTH = 180
_HEIGHT = 60
_SEPARATOR = "::"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_text() -> str:
    return "".join(secrets.choice(CAPTCHA_ALPHABET) for _ in range(CAPTCHA_LENGTH))


def _sign(secret: str, serialized: str) -> str:
    return hmac.new(secret.encode("utf-8"), serialized.encode("utf-8"), hashlib.sha256).hexdigest()


def _rand(upper: float) -> float:
    return secrets.randbelow(10_000) / 10_000 * upper


def render_svg(text: str) -> str:
    char_width = _WIDTH / (len(text) + 1)
    lines = []
    for _ in range(6):
        lines.append(
            f'<line x1="{_rand(_WIDTH):.1f}" y1="{_rand(_HEIGHT):.1f}" '
            f'x2="{_rand(_WIDTH):.1f}" y2="{_rand(_HEIGHT):.1f}" '
            'stroke="rgba(0,0,0,0.2)" stroke-width="1" />'
        )
    letters = []
    for idx, char in enumerate(text):
        x = (idx + 0.7) * char_width
        y = 35 + _rand(10)
        rotate = _rand(20) - 10
        letters.append(
            f'<text x="{x:.1f}" y="{y:.1f}" font-size="28" font-family="monospace" '
            f'fill="#1f2937" transform="rotate({rotate:.1f} {x:.1f} {y:.1f})" '
            f'font-weight="700">{char}</text>'
        )
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{_WIDTH}" height="{_HEIGHT}" '
        f'viewBox="0 0 {_WIDTH} {_HEIGHT}">'
        f'<rect width="{_WIDTH}" height="{_HEIGHT}" fill="#f8fafc"/>'
        f'{"".join(lines)}{"".join(letters)}</svg>'
    )


def issue_captcha(secret: str, *, text: Optional[str] = None, now_ms: Callable[[], int] = _now_ms) -> dict:
    """Return ``{"image", "token", "ttlMs"}`` for a fresh challenge."""
    if not secret:
        raise ValueError("Captcha not configured")
    text = text or _random_text()
    serialized = json.dumps({"text": text, "ts": now_ms()}, separators=(",", ":"))
    token = base64.b64encode(f"{serialized}{_SEPARATOR}{_sign(secret, serialized)}".encode("utf-8"))
    image = base64.b64encode(render_svg(text).encode("utf-8")).decode("ascii")
    return {
        "image": f"data:image/svg+xml;base64,{image}",
        "token": token.decode("ascii"),
        "ttlMs": CAPTCHA_TTL_MS,
    }


def verify_captcha(
    secret: str,
    token: str,
    answer: str,
    *,
    now_ms: Callable[[], int] = _now_ms,
) -> bool:
    """True if ``token`` was issued with ``secret``, is fresh, and matches ``answer``."""
    if not secret or not token or not answer:
        return False
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return False

    serialized, sep, signature = decoded.rpartition(_SEPARATOR)
    if not sep or not hmac.compare_digest(signature, _sign(secret, serialized)):
        return False

    try:
        body = json.loads(serialized)
    except ValueError:
        return False
    if not isinstance(body, dict) or not isinstance(body.get("ts"), int):
        return False
    if now_ms() - body["ts"] > CAPTCHA_TTL_MS:
        return False

    expected = str(body.get("text", ""))
    return hmac.compare_digest(expected.upper(), answer.strip().upper())
