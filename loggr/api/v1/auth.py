import logging
from fastapi import APIRouter, Depends, status, HTTPException
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from typing import Optional, Dict, Any
from loggr.schemas.base import BaseResponse
from loggr.schemas.auth import TokenResponse
from loggr.core.config import config
from loggr.core.security import ADMIN_ROLE, verify_password, create_admin_token, decode_access_token

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/auth",
    tags=["Authentication"],
    responses={404: {"description": "Not found"}}
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token")


def admin_claims_from_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decoded claims when the token is a valid admin token, else None."""
    if not token:
        return None
    token_data = decode_access_token(token)
    if not token_data or token_data.get("role") != ADMIN_ROLE or "sub" not in token_data:
        return None
    return token_data


def admin_claims_from_header(authorization: Optional[str]) -> Optional[Dict[str, Any]]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return admin_claims_from_token(authorization[len("Bearer "):].strip())


async def admin_required(token: str = Depends(oauth2_scheme)) -> Dict[str, Any]:
    """
    Dependency that only lets admin tokens through
    Returns the decoded token claims
    """
    token_data = decode_access_token(token)
    if not token_data or "sub" not in token_data:
        logger.warning("Invalid token data during authentication")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "message": "Authentication required",
                "logout": True,
                "details": [{"msg": "Authentication required"}]
            },
            headers={"WWW-Authenticate": "Bearer"}
        )
    if token_data.get("role") != ADMIN_ROLE:
        logger.warning(f"Non-admin token attempted to access admin endpoint: {token_data.get('sub')}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": "Admin privileges required",
                "logout": True,
                "details": [{"msg": "Admin privileges required"}]
            }
        )
    return token_data


@router.post("/token", response_model=BaseResponse[TokenResponse],
             summary="Admin login",
             description="Exchange admin credentials for a bearer token")
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    if (not config.ADMIN_PASSWORD_HASH
            or form_data.username != config.ADMIN_USERNAME
            or not verify_password(form_data.password, config.ADMIN_PASSWORD_HASH)):
        logger.warning(f"Failed admin login attempt for: {form_data.username}")
        return BaseResponse.failure(None, "Login failed", error_message="Invalid credentials")

    logger.info(f"Successful admin login for: {form_data.username}")
    return BaseResponse(
        data=TokenResponse(access_token=create_admin_token(form_data.username)),
        message="Login successful"
    )
