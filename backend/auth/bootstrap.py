import json
import logging

from sqlalchemy.orm import Session

from auth.utils import hash_password, normalize_email
from config import settings
from db.database import SessionLocal
from db.models import AdminRole, AdminUser, User
from services.subscription_service import reset_usage_for_plan

logger = logging.getLogger(__name__)

DEFAULT_ROLES = [
    {
        "name": "super_admin",
        "display_name": "Super Administrator",
        "description": "Full system access",
        "permissions": ["*"],
        "level": 100,
    },
    {
        "name": "admin",
        "display_name": "Administrator",
        "description": "User, subscription and content management",
        "permissions": [
            "user_management",
            "subscription_management",
            "content_moderation",
            "analytics_view",
            "reports_generate",
            "system_monitoring",
        ],
        "level": 80,
    },
    {
        "name": "manager",
        "display_name": "Manager",
        "description": "User and subscription oversight",
        "permissions": ["user_view", "user_update", "subscription_view", "analytics_view"],
        "level": 60,
    },
    {
        "name": "support",
        "display_name": "Support",
        "description": "Customer support and moderation",
        "permissions": ["user_view", "user_update_basic", "subscription_view", "content_moderation"],
        "level": 40,
    },
    {
        "name": "analyst",
        "display_name": "Analyst",
        "description": "Read-only analytics and reporting",
        "permissions": ["analytics_view", "reports_generate", "user_view", "subscription_view"],
        "level": 30,
    },
]


def seed_admin_roles(db: Session) -> int:
    """Insert any missing default roles. Existing rows are left as configured."""
    existing = {name for (name,) in db.query(AdminRole.name).all()}
    created = 0
    for role in DEFAULT_ROLES:
        if role["name"] in existing:
            continue
        db.add(
            AdminRole(
                name=role["name"],
                display_name=role["display_name"],
                description=role["description"],
                permissions_json=json.dumps(role["permissions"]),
                level=role["level"],
                is_active=True,
            )
        )
        created += 1
    if created:
        db.commit()
        logger.info(f"Seeded {created} admin roles")
    return created


def ensure_bootstrap_admin() -> None:
    db: Session = SessionLocal()
    try:
        seed_admin_roles(db)
        email = normalize_email(settings.BOOTSTRAP_ADMIN_EMAIL or "")
        if not email or not settings.BOOTSTRAP_ADMIN_PASSWORD:
            return

        user = db.query(User).filter(User.email == email).first()
        if not user:
            user = User(
                email=email,
                password_hash=hash_password(settings.BOOTSTRAP_ADMIN_PASSWORD),
                first_name="Super",
                last_name="Admin",
                subscription_plan="admin",
                subscription_status="active",
                email_verified=True,
                token_version=0,
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            reset_usage_for_plan(db, user.id, "admin")

        if not user.admin_user:
            role = db.query(AdminRole).filter(AdminRole.name == "super_admin").first()
            db.add(AdminUser(user_id=user.id, role_id=role.id, department="Platform", is_active=True))
            db.commit()
            logger.info(f"Bootstrapped super admin {email}")
    finally:
        db.close()
