from sqlalchemy.orm import Session

from homeservice.errors import Unauthorized
from homeservice.models.user import ROLE_CLIENT, UserProfile

PROFILE_FIELDS = (
    "display_name",
    "document",
    "address",
    "specialties",
    "is_available",
    "latitude",
    "longitude",
)


def get_or_create_profile(db: Session, user_id: str, role: str = ROLE_CLIENT) -> UserProfile:
    """
    Returns the profile for an authenticated user id, creating it with the
    given role on first sight. A user never changes role through here.
    """
    profile = db.get(UserProfile, user_id)
    if not profile:
        profile = UserProfile(id=user_id, role=role)
        db.add(profile)
        db.flush()
    elif profile.role != role:
        raise Unauthorized(f"user {user_id} is a {profile.role}, not a {role}")
    return profile


def update_profile(db: Session, user_id: str, role: str, **fields) -> UserProfile:
    """
    Updates the editable profile fields; unknown keys are ignored.
    """
    profile = get_or_create_profile(db, user_id, role)
    for key in PROFILE_FIELDS:
        if key in fields and fields[key] is not None:
            setattr(profile, key, fields[key])
    db.commit()
    db.refresh(profile)
    return profile
