import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_user
from ..config import Settings, get_settings
from ..database import get_db
from ..dependencies import get_gateway
from ..models import User
from ..payments import StripeGateway

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/stripe/connect",
    tags=["Stripe Connect"]
)


@router.post("/onboarding", response_model=schemas.Envelope[schemas.OnboardingOut])
def start_onboarding(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    """Create (once) an Express account for the seller and return a fresh onboarding link."""
    account_id = current_user.stripe_account_id
    if not account_id:
        account_id = gateway.create_connect_account(current_user.email, settings.connect_country)
        crud.set_stripe_account(db, current_user, account_id)
        logger.info("Created connected account %s for user %s", account_id, current_user.id)

    url = gateway.create_onboarding_link(
        account_id,
        refresh_url=settings.connect_refresh_url,
        return_url=settings.connect_return_url,
    )
    return {"success": True, "data": {"account_id": account_id, "url": url}}


@router.get("/status", response_model=schemas.Envelope[schemas.ConnectStatusOut])
def onboarding_status(
    current_user: User = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    if not current_user.stripe_account_id:
        return {"success": True, "data": {"account_id": None}}
    return {"success": True, "data": gateway.account_status(current_user.stripe_account_id)}
