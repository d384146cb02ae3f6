import logging
from io import BytesIO
from pathlib import Path
from typing import Annotated
from uuid import uuid4

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from PIL import Image, UnidentifiedImageError
from sqlmodel import Session, select

from . import models
from .db import get_session
from .entitlements import ActionCategory, FeatureGate
from .models import utc_now
from .permissions import Permissions
from .security import PermissionChecker, TenantContext
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp"}
MAX_IMAGE_SIZE = 2 * 1024 * 1024  # 2MB

# Logo optimization
MAX_IMAGE_WIDTH = 1024
MAX_IMAGE_HEIGHT = 1024
JPEG_QUALITY = 85
WEBP_QUALITY = 85

_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}


def optimize_image(image_data: bytes, content_type: str) -> bytes:
    """
    Optimize image locally using Pillow.
    - Resizes if too large
    - Compresses JPEG/WebP with quality settings
    - Optimizes PNG files
    Raises ValueError if the data is not a readable image.
    """
    try:
        image = Image.open(BytesIO(image_data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Invalid image: {e}") from e

    original_size = len(image_data)

    if content_type == "image/jpeg" and image.mode in ("RGBA", "LA", "P"):
        # JPEG has no transparency; flatten onto white
        background = Image.new("RGB", image.size, (255, 255, 255))
        if image.mode == "P":
            image = image.convert("RGBA")
        background.paste(image, mask=image.split()[-1] if image.mode in ("RGBA", "LA") else None)
        image = background
    elif content_type == "image/jpeg" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    width, height = image.size
    if width > MAX_IMAGE_WIDTH or height > MAX_IMAGE_HEIGHT:
        ratio = min(MAX_IMAGE_WIDTH / width, MAX_IMAGE_HEIGHT / height)
        new_size = (int(width * ratio), int(height * ratio))
        image = image.resize(new_size, Image.Resampling.LANCZOS)
        logger.info(f"Image resized: {width}x{height} -> {new_size[0]}x{new_size[1]}")

    output = BytesIO()
    if content_type == "image/jpeg":
        image.save(output, format="JPEG", quality=JPEG_QUALITY, optimize=True)
    elif content_type == "image/webp":
        image.save(output, format="WEBP", quality=WEBP_QUALITY, method=6)
    else:
        image.save(output, format="PNG", optimize=True)

    optimized = output.getvalue()
    logger.info(f"Image optimized: {original_size / 1024:.1f}KB -> {len(optimized) / 1024:.1f}KB")
    return optimized


def _get_or_create_settings(session: Session, client_id: int) -> models.RestaurantSettings:
    restaurant = session.exec(
        select(models.RestaurantSettings).where(models.RestaurantSettings.client_id == client_id)
    ).first()
    if restaurant is None:
        restaurant = models.RestaurantSettings(client_id=client_id)
        session.add(restaurant)
        session.commit()
        session.refresh(restaurant)
    return restaurant


def _settings_dict(client: models.Client, restaurant: models.RestaurantSettings) -> dict:
    return {
        "client_id": client.id,
        "name": client.name,
        "slug": client.slug,
        "plan": client.plan.value,
        "status": client.status.value,
        "logo_filename": client.logo_filename,
        "business_name": restaurant.business_name,
        "gst_rate": restaurant.gst_rate,
        "service_charge_rate": restaurant.service_charge_rate,
        "currency": restaurant.currency,
    }


@router.get("/settings")
def get_settings(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.SETTINGS_READ))],
    session: Session = Depends(get_session),
) -> dict:
    client = session.get(models.Client, current_user.client_id)
    return _settings_dict(client, _get_or_create_settings(session, current_user.client_id))


@router.put("/settings")
def update_settings(
    settings_update: models.SettingsUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.SETTINGS_MANAGE))],
    _: Annotated[TenantContext, Depends(FeatureGate(None, ActionCategory.admin))],
    session: Session = Depends(get_session),
) -> dict:
    update_data = settings_update.model_dump(exclude_unset=True)
    cleared = sorted(
        key for key in ("gst_rate", "service_charge_rate", "currency")
        if key in update_data and update_data[key] is None
    )
    if cleared:
        raise HTTPException(status_code=400, detail=f"Fields cannot be null: {', '.join(cleared)}")
    for rate_key in ("gst_rate", "service_charge_rate"):
        rate = update_data.get(rate_key)
        if rate is not None and not 0 <= rate <= 100:
            raise HTTPException(status_code=400, detail=f"{rate_key} must be between 0 and 100")

    restaurant = _get_or_create_settings(session, current_user.client_id)
    for key, value in update_data.items():
        setattr(restaurant, key, value)
    restaurant.updated_at = utc_now()
    session.add(restaurant)
    session.commit()
    session.refresh(restaurant)
    logger.info(f"Settings updated for client {current_user.client_id}: {sorted(update_data)}")

    client = session.get(models.Client, current_user.client_id)
    return _settings_dict(client, restaurant)


@router.post("/settings/logo")
async def upload_logo(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.SETTINGS_MANAGE))],
    _: Annotated[TenantContext, Depends(FeatureGate("custom_branding", ActionCategory.admin))],
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
) -> dict:
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid file type. Allowed: jpeg, png, webp")

    contents = await file.read()
    if len(contents) > MAX_IMAGE_SIZE:
        raise HTTPException(status_code=400, detail="File too large. Max 2MB")

    try:
        optimized = optimize_image(contents, file.content_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logo_dir = Path(settings.uploads_dir) / str(current_user.client_id) / "logo"
    logo_dir.mkdir(parents=True, exist_ok=True)

    client = session.get(models.Client, current_user.client_id)
    if client.logo_filename:
        old_path = logo_dir / client.logo_filename
        if old_path.exists():
            old_path.unlink()

    filename = f"{uuid4()}.{_EXTENSIONS[file.content_type]}"
    (logo_dir / filename).write_bytes(optimized)

    client.logo_filename = filename
    client.updated_at = utc_now()
    session.add(client)
    session.commit()

    return {"filename": filename, "logo_url": f"/uploads/{client.id}/logo/{filename}"}
