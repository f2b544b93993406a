from __future__ import annotations

import enum
from datetime import date, datetime, time

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .auth_models import Papel, Profile, new_uuid
from .db import Base

__all__ = [
    "AllocationType",
    "Assessment",
    "AssessmentOutcome",
    "AdminLog",
    "Booking",
    "BookingStatus",
    "BreakType",
    "CaseManagement",
    "CaseStatus",
    "ChangeRequest",
    "ChangeRequestStatus",
    "ChatMessage",
    "ChatSession",
    "ChatStatus",
    "Company",
    "Feedback",
    "Invite",
    "InviteStatus",
    "LeaveType",
    "Notification",
    "NotificationType",
    "Papel",
    "Pilar",
    "PlanType",
    "Prestador",
    "PrestadorAvailability",
    "PrestadorBreak",
    "PrestadorLeave",
    "Profile",
    "SessionAllocation",
    "SessionRequest",
    "SessionRequestStatus",
    "SessionType",
    "SessionUsage",
    "UsageStatus",
]


class PlanType(enum.Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Pilar(enum.Enum):
    SAUDE_MENTAL = "saude_mental"
    BEM_ESTAR_FISICO = "bem_estar_fisico"
    ASSISTENCIA_FINANCEIRA = "assistencia_financeira"
    ASSISTENCIA_JURIDICA = "assistencia_juridica"


class BookingStatus(enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


class SessionType(enum.Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"
    EMERGENCY = "emergency"


class AllocationType(enum.Enum):
    COMPANY = "company"
    PERSONAL = "personal"
    BONUS = "bonus"


class UsageStatus(enum.Enum):
    USED = "used"
    REFUNDED = "refunded"


class InviteStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ChangeRequestStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CaseStatus(enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class AssessmentOutcome(enum.Enum):
    PENDING = "pending"
    AI_CHAT = "ai_chat"
    HUMAN_REQUEST = "human_request"


class ChatStatus(enum.Enum):
    ACTIVE = "active"
    NEEDS_ESCALATION = "needs_escalation"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class SessionRequestStatus(enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class NotificationType(enum.Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_NEW = "booking_new"
    BOOKING_UPDATED = "booking_updated"
    BOOKING_CANCELLED = "booking_cancelled"
    SESSION_COMPLETED = "session_completed"
    REMINDER = "reminder"
    INVITE = "invite"
    WELCOME = "welcome"
    SESSION_REQUEST = "session_request"
    PASSWORD_RESET = "password_reset"


class BreakType(enum.Enum):
    LUNCH = "lunch"
    PERSONAL = "personal"
    BUFFER = "buffer"
    OTHER = "other"


class LeaveType(enum.Enum):
    VACATION = "vacation"
    SICK_LEAVE = "sick_leave"
    PERSONAL = "personal"
    CONFERENCE = "conference"
    TRAINING = "training"
    OTHER = "other"


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    contact_email: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    plan_type: Mapped[PlanType] = mapped_column(Enum(PlanType), default=PlanType.BASIC, nullable=False)

    # pool de sessões contratado pela empresa
    sessions_allocated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sessions_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    seat_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    profiles: Mapped[list["Profile"]] = relationship(back_populates="company")
    invites: Mapped[list["Invite"]] = relationship(back_populates="company", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"Company({self.name}, {self.plan_type.value})"


class Prestador(Base):
    __tablename__ = "prestadores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    profile_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    pillar: Mapped[Pilar] = mapped_column(Enum(Pilar), nullable=False)
    specialties: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    license_number: Mapped[str | None] = mapped_column(String(60), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    profile: Mapped["Profile"] = relationship()
    bookings: Mapped[list["Booking"]] = relationship(back_populates="prestador")

    def __repr__(self) -> str:
        return f"Prestador({self.name}, {self.pillar.value})"


class PrestadorAvailability(Base):
    """Janela de trabalho semanal. day_of_week segue date.weekday(): 0 = segunda-feira."""
    __tablename__ = "prestador_availability"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    prestador_id: Mapped[str] = mapped_column(ForeignKey("prestadores.id"), nullable=False, index=True)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class PrestadorBreak(Base):
    """
    Pausa dentro do horário. Recorrente (todas as semanas no day_of_week)
    ou pontual (só em break_date).
    """
    __tablename__ = "prestador_breaks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    prestador_id: Mapped[str] = mapped_column(ForeignKey("prestadores.id"), nullable=False, index=True)
    break_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    break_type: Mapped[BreakType] = mapped_column(Enum(BreakType), default=BreakType.OTHER, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class PrestadorLeave(Base):
    """Ausência (férias, baixa, formação); datas inclusivas."""
    __tablename__ = "prestador_leave"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    prestador_id: Mapped[str] = mapped_column(ForeignKey("prestadores.id"), nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    leave_type: Mapped[LeaveType] = mapped_column(Enum(LeaveType), default=LeaveType.VACATION, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    prestador_id: Mapped[str] = mapped_column(ForeignKey("prestadores.id"), nullable=False, index=True)
    # empresa do colaborador no momento da marcação (relatórios)
    company_id: Mapped[str | None] = mapped_column(ForeignKey("companies.id"), nullable=True, index=True)

    booking_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    pillar: Mapped[Pilar] = mapped_column(Enum(Pilar), nullable=False)
    session_type: Mapped[SessionType] = mapped_column(Enum(SessionType), default=SessionType.INDIVIDUAL, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(Enum(BookingStatus), default=BookingStatus.SCHEDULED, nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    prestador_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # preenchido quando a sessão é descontada; limpo no reembolso
    session_usage_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user: Mapped["Profile"] = relationship(foreign_keys=[user_id])
    prestador: Mapped["Prestador"] = relationship(back_populates="bookings")
    feedback: Mapped["Feedback"] = relationship(back_populates="booking", uselist=False)


class SessionAllocation(Base):
    """
    Quota de sessões de um utilizador.
    Cada ajuste cria uma linha nova e desativa a anterior (trilho de auditoria):
    no máximo uma linha ativa por (profile_id, allocation_type).
    """
    __tablename__ = "session_allocations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    profile_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    company_id: Mapped[str | None] = mapped_column(ForeignKey("companies.id"), nullable=True)
    allocation_type: Mapped[AllocationType] = mapped_column(Enum(AllocationType), nullable=False)

    sessions_allocated: Mapped[int] = mapped_column(Integer, nullable=False)
    sessions_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    allocated_by: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    replaces_id: Mapped[str | None] = mapped_column(ForeignKey("session_allocations.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def remaining(self) -> int:
        return max(self.sessions_allocated - self.sessions_used, 0)


class SessionUsage(Base):
    __tablename__ = "session_usage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    allocation_id: Mapped[str] = mapped_column(ForeignKey("session_allocations.id"), nullable=False)
    profile_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    prestador_id: Mapped[str | None] = mapped_column(ForeignKey("prestadores.id"), nullable=True)

    allocation_type: Mapped[AllocationType] = mapped_column(Enum(AllocationType), nullable=False)
    session_type: Mapped[SessionType] = mapped_column(Enum(SessionType), default=SessionType.INDIVIDUAL, nullable=False)
    session_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    session_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[UsageStatus] = mapped_column(Enum(UsageStatus), default=UsageStatus.USED, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    allocation: Mapped["SessionAllocation"] = relationship()


# no máximo uma utilização ativa por marcação (as reembolsadas ficam de fora)
Index(
    "uq_session_usage_booking_used",
    SessionUsage.booking_id,
    unique=True,
    sqlite_where=SessionUsage.status == UsageStatus.USED,
    postgresql_where=SessionUsage.status == UsageStatus.USED,
)


class Invite(Base):
    __tablename__ = "invites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    company_id: Mapped[str] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    invite_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    role: Mapped[Papel] = mapped_column(Enum(Papel), default=Papel.USER, nullable=False)
    status: Mapped[InviteStatus] = mapped_column(Enum(InviteStatus), default=InviteStatus.PENDING, nullable=False)
    # name, department, job_title, sessions_allocated
    invite_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    invited_by: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    company: Mapped["Company"] = relationship(back_populates="invites")


class ChangeRequest(Base):
    __tablename__ = "change_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prestador_id: Mapped[str] = mapped_column(ForeignKey("prestadores.id"), nullable=False)
    field_name: Mapped[str] = mapped_column(String(60), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ChangeRequestStatus] = mapped_column(
        Enum(ChangeRequestStatus), default=ChangeRequestStatus.PENDING, nullable=False
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    prestador: Mapped["Prestador"] = relationship()


class Feedback(Base):
    __tablename__ = "feedback"
    __table_args__ = (UniqueConstraint("booking_id", name="uq_feedback_booking"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    prestador_id: Mapped[str] = mapped_column(ForeignKey("prestadores.id"), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="feedback")


class AdminLog(Base):
    __tablename__ = "admin_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_id: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    action_type: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    target_type: Mapped[str] = mapped_column(String(40), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class CaseManagement(Base):
    __tablename__ = "case_management"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    prestador_id: Mapped[str] = mapped_column(ForeignKey("prestadores.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(160), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[CaseStatus] = mapped_column(Enum(CaseStatus), default=CaseStatus.OPEN, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Assessment(Base):
    __tablename__ = "assessments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    profile_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    pillar: Mapped[Pilar] = mapped_column(Enum(Pilar), nullable=False)
    topic: Mapped[str] = mapped_column(String(60), nullable=False)
    symptoms: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[AssessmentOutcome] = mapped_column(
        Enum(AssessmentOutcome), default=AssessmentOutcome.PENDING, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    profile_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    assessment_id: Mapped[str | None] = mapped_column(ForeignKey("assessments.id"), nullable=True)
    pillar: Mapped[Pilar | None] = mapped_column(Enum(Pilar), nullable=True)
    status: Mapped[ChatStatus] = mapped_column(Enum(ChatStatus), default=ChatStatus.ACTIVE, nullable=False)
    satisfaction_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    assessment: Mapped["Assessment"] = relationship()
    messages: Mapped[list["ChatMessage"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", order_by="ChatMessage.id"
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("chat_sessions.id"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # user | assistant
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    session: Mapped["ChatSession"] = relationship(back_populates="messages")


class SessionRequest(Base):
    """Pedido de sessão com um especialista humano, feito no fim da avaliação ou do chat."""
    __tablename__ = "session_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    profile_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    assessment_id: Mapped[str | None] = mapped_column(ForeignKey("assessments.id"), nullable=True)
    chat_session_id: Mapped[str | None] = mapped_column(ForeignKey("chat_sessions.id"), nullable=True)
    pillar: Mapped[Pilar] = mapped_column(Enum(Pilar), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[SessionRequestStatus] = mapped_column(
        Enum(SessionRequestStatus), default=SessionRequestStatus.PENDING, nullable=False
    )
    booking_id: Mapped[str | None] = mapped_column(ForeignKey("bookings.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tipo: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(160), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # opcional: notificação referente a uma marcação
    booking_id: Mapped[str | None] = mapped_column(ForeignKey("bookings.id"), nullable=True)
