from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse

from core.config import logger
from core.auth import get_uid_from_request, get_user_email_from_uid
from core.database import get_store
from models.entitlements import Entitlement
from utils.eduzz import UpstreamDependencyError

router = APIRouter(prefix="/api/student", tags=["student"])


@router.get("/access")
async def student_access(request: Request, store=Depends(get_store)):
    """Return the signed-in student's entitlement.
    Response: { uid, email, active, pending }
    """
    uid = get_uid_from_request(request)
    if not uid:
        logger.info("[student.access] unauthorized request (no uid)")
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    try:
        ent = Entitlement.from_doc(store.get_entitlement(uid))
    except UpstreamDependencyError as ex:
        logger.warning(f"[student.access] entitlement read failed for {uid}: {ex}")
        return JSONResponse({"error": "entitlement unavailable"}, status_code=503)

    email = (ent.email if ent else "") or get_user_email_from_uid(uid) or ""
    active = bool(ent and ent.active)
    pending = bool(ent and ent.pending and not ent.active)
    logger.info(f"[student.access] uid={uid} active={active} pending={pending}")
    return {"uid": uid, "email": email, "active": active, "pending": pending}
