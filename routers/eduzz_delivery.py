from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from typing import Mapping, Optional

from core.config import logger, WebhookSettings, get_webhook_settings
from core.auth import get_identity_provider
from core.database import get_store
from models.entitlements import (
    AccessState,
    Entitlement,
    NormalizedEvent,
    entitlement_fields,
    event_log_fields,
)
from utils.eduzz import (
    IdentityExistsError,
    MalformedPayload,
    UpstreamDependencyError,
    Verdict,
    WebhookError,
    access_for,
    classify_event,
    decode_body,
    normalize_payload,
    strip_secrets,
    synthesize_event_id,
    verify_delivery,
)
from utils.emailing import EmailDeliveryError, get_mailer, render_email

router = APIRouter(prefix="/api/eduzz", tags=["eduzz"])

WELCOME_SUBJECT = "Seu acesso ao {app_name} está liberado"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_uid(identity, email: str) -> str:
    """Find-or-create the student account for an email.

    Two deliveries for a new email can both reach create; the loser gets
    IdentityExistsError and looks the winner up once.
    """
    uid = identity.find_uid_by_email(email)
    if uid:
        return uid
    try:
        return identity.create_student(email)
    except IdentityExistsError:
        logger.info(f"[eduzz.delivery] identity for {email} created concurrently; retrying lookup")
    uid = identity.find_uid_by_email(email)
    if not uid:
        raise UpstreamDependencyError(f"identity for {email} exists but lookup returned nothing")
    return uid


def reconcile_entitlement(store, uid: str, event: NormalizedEvent, state: AccessState, now: datetime) -> bool:
    """Merge the access state into entitlements/{uid}. Returns False for a replayed event."""
    current = Entitlement.from_doc(store.get_entitlement(uid))
    if (
        current is not None
        and current.lastEventId == event.event_id
        and current.active == state.active
        and current.pending == state.pending
    ):
        logger.info(f"[eduzz.delivery] event {event.event_id} already applied to uid={uid}")
        return False
    # Applied in arrival order, last write wins
    store.merge_entitlement(uid, entitlement_fields(event, state, now))
    return True


def send_welcome_once(store, identity, mailer, settings: WebhookSettings, uid: str, email: str) -> bool:
    """Send the credential-setup email unless welcomeEmailSentAt is already set.

    Best effort: every failure here is logged and swallowed because the
    entitlement is already committed.
    """
    try:
        ent = Entitlement.from_doc(store.get_entitlement(uid))
    except UpstreamDependencyError as ex:
        logger.warning(f"[eduzz.delivery] welcome guard read failed for uid={uid}: {ex}")
        return False
    if ent is None or not ent.active:
        return False
    if ent.welcomeEmailSentAt:
        logger.info(f"[eduzz.delivery] welcome email already sent to uid={uid}")
        return False

    try:
        link = identity.credential_setup_link(email, settings.credential_continue_url)
        html = render_email(
            "email_basic.html",
            title="Seu acesso foi liberado",
            intro=(
                "Seu pagamento foi confirmado e o acesso ao banco de questões já está ativo.<br><br>"
                "Clique no botão abaixo para criar sua senha. O link é válido por tempo limitado e pode ser usado uma única vez."
            ),
            button_label="Criar minha senha",
            button_url=link,
            footer_note="Se você não fez esta compra, ignore este email.",
        )
        text = (
            "Seu pagamento foi confirmado e o acesso ao banco de questões já está ativo.\n\n"
            f"Crie sua senha por este link (uso único):\n{link}\n"
        )
        mailer.send(email, WELCOME_SUBJECT.format(app_name=settings.app_name), html, text)
    except (UpstreamDependencyError, EmailDeliveryError) as ex:
        logger.warning(f"[eduzz.delivery] welcome email to uid={uid} not sent: {ex}")
        return False

    try:
        store.merge_entitlement(uid, {"welcomeEmailSentAt": _now()})
    except UpstreamDependencyError as ex:
        # A redelivery may send a second email
        logger.error(f"[eduzz.delivery] welcome email sent but flag not saved for uid={uid}: {ex}")
    return True


def process_delivery(
    raw_body: bytes,
    headers: Mapping[str, str],
    settings: WebhookSettings,
    store,
    identity,
    mailer,
    content_type: str = "",
) -> tuple[int, dict]:
    """verify -> normalize -> classify -> resolve identity -> reconcile -> notify.

    Returns (status_code, body). WebhookError subclasses propagate to the caller.
    """
    verification = verify_delivery(raw_body, headers, settings.webhook_secret, content_type)
    if verification.verdict is Verdict.IGNORED:
        logger.info("[eduzz.delivery] no secret carrier present; acknowledged and ignored")
        return 200, {"ok": True, "ignored": True}
    logger.info(f"[eduzz.delivery] authorized via {verification.slot}")

    payload = decode_body(raw_body, content_type)
    try:
        event = normalize_payload(payload, raw_body)
    except MalformedPayload as ex:
        logger.warning(f"[eduzz.delivery] {ex.detail}; logging raw body only")
        event = NormalizedEvent(
            event_id=synthesize_event_id(raw_body),
            raw=strip_secrets(payload) or {"body": raw_body.decode("utf-8", errors="replace")[:10000]},
        )

    kind = classify_event(event.event, event.invoice_status)
    now = _now()
    store.merge_event(event.event_id, event_log_fields(event, kind), received_at=now)
    logger.info(
        f"[eduzz.delivery] event_id={event.event_id} shape={event.shape or '-'} "
        f"event='{event.event}' status='{event.invoice_status}' kind={kind.value}"
    )

    if not event.email:
        logger.warning(f"[eduzz.delivery] no email in event {event.event_id}; logged only")
        return 200, {"ok": True, "warning": "No email in payload (event logged only)", "eventId": event.event_id}

    uid = resolve_uid(identity, event.email)
    state = access_for(kind)
    reconcile_entitlement(store, uid, event, state, now)

    welcome_sent = False
    if state.active:
        welcome_sent = send_welcome_once(store, identity, mailer, settings, uid, event.email)

    logger.info(
        f"[eduzz.delivery] uid={uid} active={state.active} pending={state.pending} welcome_sent={welcome_sent}"
    )
    return 200, {
        "ok": True,
        "uid": uid,
        "eventId": event.event_id,
        "kind": kind.value,
        "state": state.model_dump(),
    }


@router.get("/delivery")
async def eduzz_delivery_status():
    return {"ok": True, "service": "eduzz-delivery"}


@router.post("/delivery")
async def eduzz_delivery(
    request: Request,
    settings: WebhookSettings = Depends(get_webhook_settings),
    store=Depends(get_store),
    identity=Depends(get_identity_provider),
    mailer=Depends(get_mailer),
):
    """
    Eduzz delivery webhook.
    Security:
      - x-signature: hex HMAC-SHA256 of the raw body keyed by EDUZZ_WEBHOOK_SECRET.
      - Standard Webhooks headers when the secret is a whsec_ key.
      - Otherwise the secret itself in a secret header, a bearer token or a body field.
    Deliveries with no secret at all (provider connectivity test) are acknowledged and ignored.
    """
    raw_body = await request.body()
    content_type: Optional[str] = request.headers.get("content-type")
    try:
        status, body = process_delivery(
            raw_body,
            request.headers,
            settings,
            store,
            identity,
            mailer,
            content_type or "",
        )
    except WebhookError as ex:
        if ex.status_code >= 500:
            logger.error(f"[eduzz.delivery] {type(ex).__name__}: {ex.detail}")
        return JSONResponse({"ok": False, "error": ex.public_message}, status_code=ex.status_code)
    except Exception as ex:
        logger.exception(f"[eduzz.delivery] unhandled error: {ex}")
        return JSONResponse({"ok": False, "error": "internal error"}, status_code=500)
    return JSONResponse(body, status_code=status)
