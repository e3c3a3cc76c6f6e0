from fastapi import Depends, HTTPException, status, Header
import firebase_admin
from firebase_admin import auth, credentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging
import os
from .config import get_settings
from .database import get_db
from .models import UserProfile

logger = logging.getLogger(__name__)


def init_firebase() -> None:
    """Initialize the default Firebase Admin app once per process."""
    try:
        firebase_admin.get_app()
        return
    except ValueError:
        pass

    cred_path = get_settings().firebase_credentials_path
    if os.path.exists(cred_path):
        firebase_admin.initialize_app(credentials.Certificate(cred_path))
    else:
        logger.warning("Firebase credentials %s not found, using application default", cred_path)
        firebase_admin.initialize_app()


async def verify_firebase_token(authorization: Optional[str] = Header(None)) -> dict:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
        )

    # Expect "Bearer <token>"
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication scheme",
        )

    try:
        return auth.verify_id_token(parts[1])
    except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError,
            auth.RevokedIdTokenError, auth.CertificateFetchError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication credentials: {str(e)}",
        )


async def get_current_user(
    token_data: dict = Depends(verify_firebase_token),
    db: AsyncSession = Depends(get_db)
) -> UserProfile:
    """Resolve the token to the user's profile, creating it on first sign-in."""
    firebase_uid = token_data["uid"]
    profile = await db.get(UserProfile, firebase_uid)
    if profile:
        return profile

    profile = UserProfile(
        id=firebase_uid,
        email=token_data.get("email"),
        display_name=token_data.get("name"),
        currency=get_settings().default_currency,
    )
    db.add(profile)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent first request created it
        await db.rollback()
        return await db.get(UserProfile, firebase_uid)
    logger.info("Created profile for %s", firebase_uid)
    return profile
