from fastapi import HTTPException, Request

from sella.payments.payfast import PayFastService
from sella.utils.enums import UserRole

# roles allowed on the merchant dashboard
MERCHANT_ROLES = {UserRole.MERCHANT_ADMIN.value, UserRole.PLATFORM_ADMIN.value}


def get_current_customer_id(request: Request) -> int:
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return int(user_id)


def require_merchant(request: Request) -> str:
    role = (request.session.get("role") or "").strip().lower()
    if role not in MERCHANT_ROLES:
        raise HTTPException(status_code=403, detail="Forbidden")
    return str(request.session.get("user_id") or "")


def get_payfast(request: Request) -> PayFastService:
    # built once in sella.main and kept on the application state
    return request.app.state.payfast
