from typing import Optional

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from api.dependencies import get_mail_transport
from core.config import get_settings
from core.exceptions import NotFoundError
from services.mail_transport import MailTransport
from utils.responses import no_store_json

router = APIRouter()

@router.get("/test-smtp")
async def test_smtp(testEmail: Optional[str] = None, mail: MailTransport = Depends(get_mail_transport)):
    """SMTP diagnosis, live connection check and optional test send. Disabled in production."""
    if get_settings().is_production:
        raise NotFoundError("Not found")
    diagnosis = mail.diagnose()
    verification = await run_in_threadpool(mail.verify_connection)
    test_result = None
    if testEmail:
        test_result = await run_in_threadpool(mail.send_otp, testEmail, "123456", "test")
    return no_store_json({
        "success": True,
        "message": "SMTP diagnostics",
        "diagnosis": diagnosis,
        "verification": _result_json(verification),
        "testEmail": _result_json(test_result) if test_result else None,
    })

def _result_json(result):
    return {
        "success": result.success,
        "messageId": result.message_id,
        "code": result.kind,
        "error": result.error,
        "hint": result.hint,
        "details": result.detail,
    }
