import json
from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, ForeignKey, Index,
    DateTime, Date, Numeric, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from db.database import Base


def _json_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(Text, unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    first_name = Column(Text, nullable=False, default="")
    last_name = Column(Text, nullable=False, default="")
    subscription_plan = Column(Text, nullable=False, default="free")  # free | starter | business | admin
    subscription_status = Column(Text, nullable=False, default="active")  # active | inactive | suspended | canceled
    email_verified = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    usage_records = relationship("SubscriptionUsage", back_populates="user", cascade="all, delete-orphan")
    subscription_requests = relationship(
        "SubscriptionRequest",
        back_populates="user",
        cascade="all, delete-orphan",
        foreign_keys="SubscriptionRequest.user_id",
    )
    payment_transactions = relationship("PaymentTransaction", back_populates="user", cascade="all, delete-orphan")
    questionnaires = relationship("Questionnaire", back_populates="user", cascade="all, delete-orphan")
    admin_user = relationship("AdminUser", back_populates="user", uselist=False, cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class SubscriptionUsage(Base):
    __tablename__ = "subscription_usages"
    __table_args__ = (UniqueConstraint("user_id", "usage_type", name="uq_subscription_usage_user_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    usage_type = Column(Text, nullable=False)  # questionnaires | responses | exports
    current_count = Column(Integer, nullable=False, default=0)
    limit_count = Column(Integer, nullable=True)  # NULL = unlimited
    reset_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="usage_records")


class SubscriptionRequest(Base):
    __tablename__ = "subscription_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    requested_plan = Column(Text, nullable=False)
    current_plan = Column(Text, nullable=False)
    reason = Column(Text)
    status = Column(Text, nullable=False, default="pending")  # pending | approved | rejected
    admin_notes = Column(Text)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    payment_method = Column(Text)  # dana | manual | qr_code
    payment_url = Column(Text)
    amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="subscription_requests", foreign_keys=[user_id])
    processor = relationship("User", foreign_keys=[processed_by])


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    payment_method = Column(Text, nullable=False, default="dana")
    external_id = Column(Text)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(Text, nullable=False, default="IDR")
    status = Column(Text, nullable=False, default="pending")  # pending | completed | failed | refunded
    subscription_plan = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="payment_transactions")


class AdminRole(Base):
    __tablename__ = "admin_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, unique=True, nullable=False)  # super_admin | admin | manager | support | analyst
    display_name = Column(Text, nullable=False)
    description = Column(Text)
    permissions_json = Column(Text, nullable=False, default="[]")
    level = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    admin_users = relationship("AdminUser", back_populates="role")

    @property
    def permissions(self) -> list[str]:
        return [str(p) for p in _json_list(self.permissions_json)]


class AdminUser(Base):
    __tablename__ = "admin_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    role_id = Column(Integer, ForeignKey("admin_roles.id"), nullable=False)
    department = Column(Text)
    permissions_json = Column(Text)  # JSON array of custom permissions
    last_login_at = Column(DateTime, nullable=True)
    login_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    two_factor_secret = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="admin_user")
    role = relationship("AdminRole", back_populates="admin_users")
    activities = relationship("AdminActivity", back_populates="admin_user", cascade="all, delete-orphan")

    @property
    def permissions(self) -> list[str]:
        return [str(p) for p in _json_list(self.permissions_json)]


class AdminActivity(Base):
    __tablename__ = "admin_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admin_user_id = Column(Integer, ForeignKey("admin_users.id"), nullable=False)
    action = Column(Text, nullable=False)
    resource_type = Column(Text)
    resource_id = Column(Integer)
    details_json = Column(Text)
    ip_address = Column(Text)
    user_agent = Column(Text)
    session_id = Column(Text)
    duration_ms = Column(Integer)
    status = Column(Text, nullable=False, default="success")  # success | failure | warning
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    admin_user = relationship("AdminUser", back_populates="activities")


class Questionnaire(Base):
    __tablename__ = "questionnaires"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    category = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="questionnaires")
    questions = relationship(
        "Question",
        back_populates="questionnaire",
        cascade="all, delete-orphan",
        order_by="Question.order_index",
    )
    responses = relationship("Response", back_populates="questionnaire", cascade="all, delete-orphan")
    breakdowns = relationship("AnalyticsBreakdown", back_populates="questionnaire", cascade="all, delete-orphan")
    qr_codes = relationship("QRCode", back_populates="questionnaire", cascade="all, delete-orphan")


class Question(Base):
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    questionnaire_id = Column(Integer, ForeignKey("questionnaires.id"), nullable=False)
    question_text = Column(Text, nullable=False)
    question_type = Column(Text, nullable=False, default="text")
    category = Column(Text)
    options_json = Column(Text)  # JSON array for choice questions
    is_required = Column(Boolean, nullable=False, default=False)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    questionnaire = relationship("Questionnaire", back_populates="questions")
    answers = relationship("Answer", back_populates="question", cascade="all, delete-orphan")

    @property
    def options(self) -> list:
        return _json_list(self.options_json)


class Response(Base):
    __tablename__ = "responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    questionnaire_id = Column(Integer, ForeignKey("questionnaires.id"), nullable=False)
    response_date = Column(DateTime, default=datetime.utcnow)
    ip_address = Column(Text)
    user_agent = Column(Text)
    is_complete = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    questionnaire = relationship("Questionnaire", back_populates="responses")
    answers = relationship("Answer", back_populates="response", cascade="all, delete-orphan")
    review = relationship("Review", back_populates="response", uselist=False, cascade="all, delete-orphan")


class Answer(Base):
    __tablename__ = "answers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    response_id = Column(Integer, ForeignKey("responses.id"), nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    answer_value = Column(Text)
    rating_score = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    response = relationship("Response", back_populates="answers")
    question = relationship("Question", back_populates="answers")


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    response_id = Column(Integer, ForeignKey("responses.id"), unique=True, nullable=False)
    review_status = Column(Text, nullable=False, default="pending")  # pending | approved | rejected | flagged | needs_review
    priority = Column(Text, nullable=False, default="medium")  # low | medium | high | urgent
    auto_flagged = Column(Boolean, nullable=False, default=False)
    admin_notes = Column(Text)
    reviewed_by = Column(Integer, ForeignKey("admin_users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    response = relationship("Response", back_populates="review")


class AnalyticsBreakdown(Base):
    __tablename__ = "analytics_breakdowns"
    __table_args__ = (
        UniqueConstraint("questionnaire_id", "period_type", "period_date", "area", name="uq_breakdown_period_area"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    questionnaire_id = Column(Integer, ForeignKey("questionnaires.id"), nullable=False)
    period_type = Column(Text, nullable=False)  # day | week | month | year
    period_date = Column(Date, nullable=False)
    area = Column(Text, nullable=False)
    avg_rating = Column(Float, nullable=True)
    responses = Column(Integer, nullable=False, default=0)
    trend = Column(Float, nullable=True)
    status = Column(Text, nullable=False, default="Monitor")  # Good | Monitor | Urgent
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    questionnaire = relationship("Questionnaire", back_populates="breakdowns")


class QRCode(Base):
    __tablename__ = "qr_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    questionnaire_id = Column(Integer, ForeignKey("questionnaires.id"), nullable=False)
    qr_code_data = Column(Text, unique=True, nullable=False)  # URL encoded into the image
    location_tag = Column(Text)
    custom_colors_json = Column(Text)  # {"foreground": "#000000", "background": "#FFFFFF"}
    size = Column(Integer, nullable=False, default=200)
    error_correction_level = Column(Text, nullable=False, default="M")  # L | M | Q | H
    scan_count = Column(Integer, nullable=False, default=0)
    unique_scans = Column(Integer, nullable=False, default=0)
    last_scan_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    questionnaire = relationship("Questionnaire", back_populates="qr_codes")
    scans = relationship("QRCodeScan", back_populates="qr_code", cascade="all, delete-orphan")

    @property
    def custom_colors(self) -> dict:
        if not self.custom_colors_json:
            return {}
        try:
            value = json.loads(self.custom_colors_json)
        except (TypeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}


class QRCodeScan(Base):
    __tablename__ = "qr_code_scans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    qr_code_id = Column(Integer, ForeignKey("qr_codes.id"), nullable=False)
    device_fingerprint = Column(Text, nullable=False)  # sha256 of ip + user agent
    created_at = Column(DateTime, default=datetime.utcnow)

    qr_code = relationship("QRCode", back_populates="scans")

class RateLimitAuditEvent(Base):
    __tablename__ = "rate_limit_audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint = Column(Text, nullable=False)
    scope_key = Column(Text, nullable=False)
    blocked = Column(Boolean, nullable=False, default=False)
    retry_after_seconds = Column(Integer)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    ip_address = Column(Text)
    details_json = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


# Indexes
Index("idx_subscription_usage_user", SubscriptionUsage.user_id)
Index("idx_payment_transactions_user_date", PaymentTransaction.user_id, PaymentTransaction.created_at)
Index("idx_admin_roles_level", AdminRole.level)
Index("idx_admin_activities_action", AdminActivity.action, AdminActivity.created_at)
Index("idx_questionnaires_user", Questionnaire.user_id, Questionnaire.deleted_at)
Index("idx_questions_questionnaire", Question.questionnaire_id, Question.order_index)
Index("idx_answers_response", Answer.response_id)
Index("idx_reviews_status", Review.review_status, Review.created_at)
Index("idx_qr_codes_questionnaire", QRCode.questionnaire_id)
Index("idx_qr_code_scans_fingerprint", QRCodeScan.qr_code_id, QRCodeScan.device_fingerprint, QRCodeScan.created_at)
Index("idx_breakdowns_questionnaire_period", AnalyticsBreakdown.questionnaire_id, AnalyticsBreakdown.period_type, AnalyticsBreakdown.period_date)
Index("idx_rate_limit_audit_created_at", RateLimitAuditEvent.created_at)
