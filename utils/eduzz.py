import enum
import hashlib
import hmac
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qs
from standardwebhooks import Webhook, WebhookVerificationError

from core.config import logger
from models.entitlements import AccessState, EventKind, NormalizedEvent


# Errors

class WebhookError(Exception):
    status_code = 500
    public_message = "internal error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class ConfigurationError(WebhookError):
    status_code = 500
    public_message = "webhook not configured"


class AuthenticationError(WebhookError):
    status_code = 401
    public_message = "Unauthorized"


class MalformedPayload(WebhookError):
    status_code = 400
    public_message = "malformed payload"


class UpstreamDependencyError(WebhookError):
    status_code = 500
    public_message = "upstream dependency failed"


class IdentityExistsError(Exception):
    """Raised by the identity provider when the email is already registered."""


# Verification

SIGNATURE_HEADER = "x-signature"
STANDARD_WEBHOOK_HEADERS = ("webhook-id", "webhook-timestamp", "webhook-signature")
SECRET_HEADERS = ("x-eduzz-secret", "x-webhook-secret", "x-origin-secret")
BODY_SECRET_FIELDS = ("origin_secret", "originSecret", "secret", "api_key")


class Verdict(str, enum.Enum):
    AUTHORIZED = "authorized"
    IGNORED = "ignored"


@dataclass
class Verification:
    verdict: Verdict
    slot: str = ""
    populated: list[str] = field(default_factory=list)


def hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _same_secret(candidate: str, secret: str) -> bool:
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


def _check_signature(raw_body: bytes, secret: str, signature: str) -> bool:
    sig = signature.strip().lower()
    if sig.startswith("sha256="):
        sig = sig[len("sha256="):]
    return hmac.compare_digest(hmac_sha256_hex(secret, raw_body).encode("utf-8"), sig.encode("utf-8"))


def _check_standard_webhook(raw_body: bytes, secret: str, headers: Mapping[str, str]) -> bool:
    try:
        Webhook(secret).verify(raw_body, {k: headers[k] for k in STANDARD_WEBHOOK_HEADERS})
        return True
    except WebhookVerificationError:
        return False
    except json.JSONDecodeError:
        # Signature checked out; the library only failed to parse a non-JSON body
        return True
    except Exception:
        # Non whsec_ secrets fail to decode as signing keys
        return False


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def _header_candidates(
    raw_body: bytes,
    headers: dict[str, str],
    secret: str,
) -> list[tuple[str, Callable[[], bool]]]:
    """Populated header slots in priority order, each with its matcher."""
    out: list[tuple[str, Callable[[], bool]]] = []

    signature = headers.get(SIGNATURE_HEADER, "").strip()
    if signature:
        out.append((f"header:{SIGNATURE_HEADER}", lambda: _check_signature(raw_body, secret, signature)))

    if all(headers.get(h, "").strip() for h in STANDARD_WEBHOOK_HEADERS):
        out.append(("header:webhook-signature", lambda: _check_standard_webhook(raw_body, secret, headers)))

    for name in SECRET_HEADERS:
        value = headers.get(name, "").strip()
        if value:
            out.append((f"header:{name}", lambda value=value: _same_secret(value, secret)))

    auth = headers.get("authorization", "").strip()
    if auth.lower().startswith("bearer ") and auth[7:].strip():
        token = auth[7:].strip()
        out.append(("header:authorization", lambda: _same_secret(token, secret)))
    return out


def _body_candidates(body: dict, secret: str) -> list[tuple[str, Callable[[], bool]]]:
    out: list[tuple[str, Callable[[], bool]]] = []
    for name in BODY_SECRET_FIELDS:
        value = body.get(name)
        if isinstance(value, str) and value.strip():
            out.append((f"body:{name}", lambda value=value.strip(): _same_secret(value, secret)))
    return out


def verify_delivery(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: str,
    content_type: str = "",
) -> Verification:
    """Authenticate one delivery against the shared secret.

    Header carriers are checked against the raw bytes first. The body is only
    decoded when no header carrier matched, and then only to locate a secret
    sent as a form/JSON field.
    Raises ConfigurationError when no secret is configured and
    AuthenticationError when a carrier is present but nothing matches.
    """
    if not secret:
        raise ConfigurationError("Missing EDUZZ_WEBHOOK_SECRET")

    populated: list[str] = []
    for slot, matches in _header_candidates(raw_body, _lower_headers(headers), secret):
        populated.append(slot)
        if matches():
            return Verification(verdict=Verdict.AUTHORIZED, slot=slot, populated=populated)

    for slot, matches in _body_candidates(decode_body(raw_body, content_type), secret):
        populated.append(slot)
        if matches():
            return Verification(verdict=Verdict.AUTHORIZED, slot=slot, populated=populated)

    if not populated:
        return Verification(verdict=Verdict.IGNORED)

    logger.warning(f"[eduzz.delivery] secret mismatch; populated slots={populated}")
    raise AuthenticationError("invalid signature")


# Body decoding

def decode_body(raw_body: bytes, content_type: str = "") -> dict[str, Any]:
    """Decode a JSON or form-encoded body into a dict; {} when nothing usable."""
    text = (raw_body or b"").decode("utf-8", errors="replace").strip()
    if not text:
        return {}
    ct = (content_type or "").lower()
    if "json" in ct or text[:1] in ("{", "["):
        try:
            parsed = json.loads(text)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return _parse_query(text)


def _parse_query(text: str) -> dict[str, Any]:
    parsed = parse_qs(text, keep_blank_values=True)
    return {k: (v[0] if len(v) == 1 else v) for k, v in parsed.items()}


# Payload shapes

class PayloadShape(str, enum.Enum):
    ENVELOPE = "envelope"
    MESSAGE = "message"
    LEGACY_FORM = "legacy_form"
    FLAT = "flat"


EMAIL_PATHS = (
    ("buyer", "email"),
    ("customer", "email"),
    ("client", "email"),
    ("user", "email"),
    ("student", "email"),
    ("email",),
)
INVOICE_ID_PATHS = (("invoice", "id"), ("invoiceId",), ("invoice_id",), ("id",))
INVOICE_STATUS_PATHS = (("invoice", "status"), ("status",))
PRODUCT_ID_PATHS = (("product", "id"), ("productId",), ("product_id",), ("content", "id"))
PRODUCT_TITLE_PATHS = (("product", "title"), ("productTitle",), ("product_title",), ("content", "title"))
EVENT_FIELDS = ("event", "type", "evento", "edz_evento")
LEGACY_PREFIX = "edz_"


def _at(node: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def _first_string(node: Any, paths) -> str:
    for path in paths:
        value = _at(node, path)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def normalize_email(value: Any) -> str:
    email = str(value or "").strip().lower()
    return email if "@" in email else ""


def _first_email(node: Any, paths=EMAIL_PATHS) -> str:
    for path in paths:
        email = normalize_email(_at(node, path))
        if email:
            return email
    return ""


def _record(data: dict, event: str = "", event_id: str = "") -> dict[str, str]:
    return {
        "event_id": event_id,
        "event": event,
        "email": _first_email(data),
        "invoice_id": _first_string(data, INVOICE_ID_PATHS),
        "invoice_status": _first_string(data, INVOICE_STATUS_PATHS),
        "product_id": _first_string(data, PRODUCT_ID_PATHS),
        "product_title": _first_string(data, PRODUCT_TITLE_PATHS),
    }


def _from_envelope(payload: dict) -> Optional[dict]:
    event = payload.get("event")
    data = payload.get("data")
    if not isinstance(event, str) or not isinstance(data, dict):
        return None
    return _record(data, event=event.strip(), event_id=_first_string(payload, (("id",),)))


def _decode_message(message: Any) -> Optional[dict]:
    if isinstance(message, dict):
        return message
    if not isinstance(message, str) or not message.strip():
        return None
    text = message.strip()
    if text[:1] == "{":
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    parsed = _parse_query(text)
    return parsed or None


def _from_message(payload: dict) -> Optional[dict]:
    inner = _decode_message(payload.get("message"))
    if inner is None:
        return None
    found = _detect(inner, (PayloadShape.ENVELOPE, PayloadShape.LEGACY_FORM, PayloadShape.FLAT))
    if found is None:
        return None
    _, rec = found
    rec["event"] = rec["event"] or _first_string(payload, [(k,) for k in EVENT_FIELDS])
    rec["event_id"] = rec["event_id"] or _first_string(payload, (("id",),))
    return rec


def _from_legacy_form(payload: dict) -> Optional[dict]:
    if not any(str(k).startswith(LEGACY_PREFIX) for k in payload):
        return None
    return {
        "event_id": "",
        "event": _first_string(payload, [(k,) for k in EVENT_FIELDS]),
        "email": normalize_email(payload.get("edz_cli_email")),
        "invoice_id": _first_string(payload, (("edz_fat_cod",),)),
        "invoice_status": _first_string(payload, (("edz_fat_status",),)),
        "product_id": _first_string(payload, (("edz_cnt_cod",),)),
        "product_title": _first_string(payload, (("edz_cnt_titulo",),)),
    }


def _from_flat(payload: dict) -> Optional[dict]:
    if not payload:
        return None
    # A flat top-level id is the invoice, not the delivery
    return _record(payload, event=_first_string(payload, [(k,) for k in EVENT_FIELDS]))


_EXTRACTORS: dict[PayloadShape, Callable[[dict], Optional[dict]]] = {
    PayloadShape.ENVELOPE: _from_envelope,
    PayloadShape.MESSAGE: _from_message,
    PayloadShape.LEGACY_FORM: _from_legacy_form,
    PayloadShape.FLAT: _from_flat,
}

SHAPE_PRIORITY = (
    PayloadShape.ENVELOPE,
    PayloadShape.MESSAGE,
    PayloadShape.LEGACY_FORM,
    PayloadShape.FLAT,
)


def _detect(payload: dict, shapes) -> Optional[tuple[PayloadShape, dict]]:
    """First shape yielding an email wins; else the first shape that matched at all."""
    fallback = None
    for shape in shapes:
        rec = _EXTRACTORS[shape](payload)
        if rec is None:
            continue
        if rec["email"]:
            return shape, rec
        if fallback is None:
            fallback = (shape, rec)
    return fallback


def synthesize_event_id(raw_body: bytes) -> str:
    return "body_" + hashlib.sha256(raw_body or b"").hexdigest()[:40]


def normalize_payload(payload: Any, raw_body: bytes = b"") -> NormalizedEvent:
    """Map any known Eduzz payload shape to a NormalizedEvent.

    Raises MalformedPayload when the body is not an object or matches no shape.
    """
    if not isinstance(payload, dict) or not payload:
        raise MalformedPayload("payload is not an object")
    found = _detect(payload, SHAPE_PRIORITY)
    if found is None:
        raise MalformedPayload("no known payload shape")
    shape, rec = found
    event_id = rec.pop("event_id") or synthesize_event_id(raw_body)
    # Firestore document ids may not contain "/"
    event_id = event_id.replace("/", "_")
    return NormalizedEvent(event_id=event_id, shape=shape.value, raw=strip_secrets(payload), **rec)


def strip_secrets(payload: dict) -> dict:
    """Copy of payload without body-carried secrets, safe to persist."""
    return {k: v for k, v in payload.items() if k not in BODY_SECRET_FIELDS}


# Classification

NUMERIC_STATUS = {
    "1": EventKind.INVOICE_OPENED,
    "3": EventKind.INVOICE_PAID,
    "4": EventKind.INVOICE_CANCELED,
    "7": EventKind.INVOICE_CANCELED,
}
# Whole tokens only: "pagamento" and "unpaid" are not paid
PAID_TOKENS = frozenset({"paid", "paga", "pago", "aprovada", "aprovado", "approved"})
OPENED_TOKENS = frozenset({"open", "opened", "aberta", "aberto", "aguardando", "waiting"})
CANCELED_PREFIXES = ("cancel", "refund", "reembols", "chargeback", "estorn")
NEGATIONS = frozenset({"not", "nao", "não", "no", "sem"})

_TOKEN_SPLIT = re.compile(r"[\W_]+")

ACCESS_TRANSITIONS: dict[EventKind, AccessState] = {
    EventKind.INVOICE_OPENED: AccessState(active=False, pending=True),
    EventKind.INVOICE_PAID: AccessState(active=True, pending=False),
    EventKind.INVOICE_CANCELED: AccessState(active=False, pending=False),
    EventKind.UNKNOWN: AccessState(active=False, pending=True),
}


def _tokens(text: str) -> list[str]:
    return [t for t in _TOKEN_SPLIT.split(text) if t]


def _matches(tokens: list[str], accept: Callable[[str], bool]) -> bool:
    for i, token in enumerate(tokens):
        if accept(token) and (i == 0 or tokens[i - 1] not in NEGATIONS):
            return True
    return False


def _is_paid(tokens: list[str]) -> bool:
    return _matches(tokens, PAID_TOKENS.__contains__)


def _is_opened(tokens: list[str]) -> bool:
    return _matches(tokens, OPENED_TOKENS.__contains__)


def _is_canceled(tokens: list[str]) -> bool:
    return _matches(tokens, lambda t: t.startswith(CANCELED_PREFIXES))


def classify_event(event: str, invoice_status: str = "") -> EventKind:
    """Map the provider event name and raw invoice status to an EventKind.

    Either source may carry the signal. Words are matched as whole tokens and a
    token preceded by a negation ("não pago", "not paid") does not count.
    """
    evt = _tokens((event or "").strip().lower())
    raw_status = (invoice_status or "").strip().lower()
    status = _tokens(raw_status)
    coded = NUMERIC_STATUS.get(raw_status)

    if _is_canceled(evt):
        return EventKind.INVOICE_CANCELED
    if _is_paid(evt) or _is_paid(status) or coded is EventKind.INVOICE_PAID:
        return EventKind.INVOICE_PAID
    if _is_canceled(status) or coded is EventKind.INVOICE_CANCELED:
        return EventKind.INVOICE_CANCELED
    if _is_opened(evt) or _is_opened(status) or coded is EventKind.INVOICE_OPENED:
        return EventKind.INVOICE_OPENED
    return EventKind.UNKNOWN


def access_for(kind: EventKind) -> AccessState:
    return ACCESS_TRANSITIONS[kind]
