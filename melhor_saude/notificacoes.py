from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .config import REMINDER_HOURS
from .db import db_session
from .models import Booking, BookingStatus, Notification, NotificationType, Profile

logger = logging.getLogger(__name__)


# =========================
# Outbox
# =========================
def enfileirar(
    s: Session,
    tipo: NotificationType,
    title: str,
    message: str,
    recipient_id: str | None = None,
    recipient_email: str | None = None,
    booking_id: str | None = None,
) -> Notification:
    """
    Regista a notificação na mesma transação do caso de uso.
    O envio real (email/push) é feito por um sistema externo que lê as pendentes.
    """
    n = Notification(
        tipo=tipo,
        title=title,
        message=message,
        recipient_id=recipient_id,
        recipient_email=recipient_email,
        booking_id=booking_id,
    )
    s.add(n)
    return n


def extrair_notificacoes_pendentes(limit: int = 50) -> list[Notification]:
    """Devolve as notificações ainda não enviadas (sent_at é NULL)."""
    with db_session() as s:
        q = select(Notification).where(Notification.sent_at.is_(None)).order_by(Notification.created_at.asc(), Notification.id.asc()).limit(limit)
        return list(s.scalars(q))


def notificacoes_pendentes_flat(limit: int = 200) -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(
                Notification.id,
                Notification.tipo,
                Notification.title,
                Notification.message,
                Notification.created_at,
                Notification.booking_id,
                Profile.email.label("profile_email"),
                Notification.recipient_email,
            )
            .outerjoin(Profile, Profile.id == Notification.recipient_id)
            .where(Notification.sent_at.is_(None))
            .order_by(Notification.created_at.asc(), Notification.id.asc())
            .limit(limit)
        ).all()
        return [
            {
                "id": r.id,
                "tipo": r.tipo.value,
                "title": r.title,
                "message": r.message,
                "created_at": r.created_at.isoformat(),
                "booking_id": r.booking_id,
                "recipient": r.profile_email or r.recipient_email,
            }
            for r in rows
        ]


def marcar_notificacao_enviada(notification_id: int) -> bool:
    with db_session() as s:
        n = s.get(Notification, notification_id)
        if not n or n.sent_at is not None:
            return False
        n.sent_at = datetime.utcnow()
        return True


# =========================
# Lembretes
# =========================
def gerar_lembretes(agora: datetime | None = None, horas: int = REMINDER_HOURS) -> int:
    """
    Cria um lembrete para cada marcação ativa que começa nas próximas `horas`.
    Cada marcação recebe no máximo um lembrete (flag reminder_sent).
    """
    agora = agora or datetime.utcnow()
    limite = agora + timedelta(hours=horas)

    with db_session() as s:
        q = select(Booking).where(
            and_(
                Booking.status.in_([BookingStatus.SCHEDULED, BookingStatus.CONFIRMED]),
                Booking.booking_date > agora,
                Booking.booking_date <= limite,
                Booking.reminder_sent.is_(False),
            )
        )
        total = 0
        for b in s.scalars(q):
            quando = b.booking_date.strftime("%d/%m/%Y %H:%M")
            enfileirar(
                s,
                NotificationType.REMINDER,
                "Lembrete de sessão",
                f"Tem uma sessão com {b.prestador.name} marcada para {quando}.",
                recipient_id=b.user_id,
                booking_id=b.id,
            )
            enfileirar(
                s,
                NotificationType.REMINDER,
                "Lembrete de sessão",
                f"Sessão com {b.user.name} marcada para {quando}.",
                recipient_id=b.prestador.profile_id,
                booking_id=b.id,
            )
            b.reminder_sent = True
            total += 1

        logger.info("Lembretes gerados para %d marcações", total)
        return total
