from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .auth_service import Ator, empresa_do_rh
from .db import db_session
from .disponibilidade import cabe_no_horario, janelas_do_dia
from .errors import Conflito, NaoEncontrado, PedidoInvalido, SemPermissao
from .models import (
    Booking,
    BookingStatus,
    Feedback,
    NotificationType,
    Papel,
    Prestador,
    Profile,
    SessionType,
)
from .notificacoes import enfileirar
from .sessoes import deduzir_sessao_marcacao, reembolsar_sessao_marcacao

logger = logging.getLogger(__name__)

TRANSICOES: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.SCHEDULED: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.RESCHEDULED},
    BookingStatus.CONFIRMED: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
        BookingStatus.RESCHEDULED,
    },
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: {BookingStatus.SCHEDULED},
    BookingStatus.NO_SHOW: set(),
    BookingStatus.RESCHEDULED: set(),
}

# estados que só o prestador (ou admin) pode definir
SO_PRESTADOR = {BookingStatus.COMPLETED, BookingStatus.NO_SHOW}

# estados que ocupam a agenda do prestador
OCUPA_AGENDA = (BookingStatus.SCHEDULED, BookingStatus.CONFIRMED, BookingStatus.COMPLETED)

DURACAO_MAXIMA = 240


# =========================
# Helper / DTO
# =========================
@dataclass(frozen=True)
class ResultadoTransicao:
    booking_id: str
    status_anterior: str
    status: str
    sessao_descontada: bool
    sessao_reembolsada: bool

    def as_dict(self) -> dict:
        return {
            "booking_id": self.booking_id,
            "previous_status": self.status_anterior,
            "status": self.status,
            "session_deducted": self.sessao_descontada,
            "session_refunded": self.sessao_reembolsada,
        }


def para_utc_naive(dt: datetime) -> datetime:
    """As datas são guardadas em UTC sem timezone."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def marcacao_flat(b: Booking) -> dict:
    return {
        "id": b.id,
        "user_id": b.user_id,
        "user_name": b.user.name,
        "prestador_id": b.prestador_id,
        "prestador_name": b.prestador.name,
        "company_id": b.company_id,
        "booking_date": b.booking_date.isoformat(),
        "duration": b.duration,
        "pillar": b.pillar.value,
        "session_type": b.session_type.value,
        "status": b.status.value,
        "notes": b.notes,
        "prestador_notes": b.prestador_notes,
        "cancellation_reason": b.cancellation_reason,
        "session_usage_id": b.session_usage_id,
        "created_at": b.created_at.isoformat(),
    }


def _prestador_do_perfil(s: Session, profile_id: str) -> Prestador | None:
    return s.execute(select(Prestador).where(Prestador.profile_id == profile_id)).scalar_one_or_none()


def _marcacao_acessivel(s: Session, ator: Ator, booking_id: str, bloquear: bool = False) -> tuple[Booking, str]:
    """
    Devolve a marcação e a relação do ator com ela: admin, prestador ou user.
    `bloquear` lê com SELECT ... FOR UPDATE (ignorado em SQLite).
    """
    q = select(Booking).where(Booking.id == booking_id)
    if bloquear:
        q = q.with_for_update()
    b = s.execute(q).scalar_one_or_none()
    if not b:
        raise NaoEncontrado("Marcação não encontrada.")
    if ator.is_admin:
        return b, "admin"
    if b.prestador.profile_id == ator.id:
        return b, "prestador"
    if b.user_id == ator.id:
        return b, "user"
    raise SemPermissao("Sem acesso a esta marcação.")


# =========================
# Disponibilidade
# =========================
def _slot_livre(
    s: Session,
    prestador_id: str,
    start: datetime,
    duracao: int,
    ignorar_id: str | None = None,
) -> bool:
    """Sem sobreposição [start, end) com marcações ativas do prestador."""
    end = start + timedelta(minutes=duracao)
    q = select(Booking).where(
        and_(
            Booking.prestador_id == prestador_id,
            Booking.status.in_(OCUPA_AGENDA),
            Booking.booking_date < end,
            Booking.booking_date >= start - timedelta(minutes=DURACAO_MAXIMA),
        )
    )
    for b in s.scalars(q):
        if b.id == ignorar_id:
            continue
        if b.booking_date + timedelta(minutes=b.duration) > start:
            return False
    return True


def agenda_prestador(prestador_id: str, dia: date) -> list[dict]:
    inicio = datetime.combine(dia, datetime.min.time())
    fim = inicio + timedelta(days=1)
    with db_session() as s:
        q = (
            select(Booking)
            .where(
                and_(
                    Booking.prestador_id == prestador_id,
                    Booking.booking_date >= inicio,
                    Booking.booking_date < fim,
                    Booking.status != BookingStatus.CANCELLED,
                )
            )
            .order_by(Booking.booking_date.asc())
        )
        return [
            {
                "id": b.id,
                "start": b.booking_date.strftime("%H:%M"),
                "end": (b.booking_date + timedelta(minutes=b.duration)).strftime("%H:%M"),
                "status": b.status.value,
                "user": b.user.name,
                "session_type": b.session_type.value,
                "notes": b.notes,
            }
            for b in s.scalars(q)
        ]


def horarios_disponiveis(prestador_id: str, dia: date, duracao: int = 60, agora: datetime | None = None) -> list[str]:
    """Horários livres (HH:MM) dentro das janelas de trabalho do prestador nesse dia."""
    if duracao <= 0:
        raise PedidoInvalido("A duração deve ser positiva.")
    agora = agora or datetime.utcnow()

    with db_session() as s:
        if not s.get(Prestador, prestador_id):
            raise NaoEncontrado("Prestador não encontrado.")
        livres = []
        for abertura, fecho in janelas_do_dia(s, prestador_id, dia):
            t = abertura
            while t + timedelta(minutes=duracao) <= fecho:
                if t > agora and _slot_livre(s, prestador_id, t, duracao):
                    livres.append(t.strftime("%H:%M"))
                t += timedelta(minutes=duracao)
        return livres


# =========================
# Criação
# =========================
def criar_marcacao_em(
    s: Session,
    user: Profile,
    prestador_id: str,
    booking_date: datetime,
    duration: int = 60,
    session_type: SessionType = SessionType.INDIVIDUAL,
    notes: str | None = None,
    agora: datetime | None = None,
) -> Booking:
    agora = agora or datetime.utcnow()
    booking_date = para_utc_naive(booking_date)
    if booking_date <= agora:
        raise PedidoInvalido("A data da marcação tem de ser no futuro.")
    if duration <= 0 or duration > DURACAO_MAXIMA:
        raise PedidoInvalido(f"Duração inválida (1-{DURACAO_MAXIMA} minutos).")
    if not user.is_active:
        raise PedidoInvalido("A conta do utilizador está inativa.")

    prestador = s.get(Prestador, prestador_id)
    if not prestador:
        raise NaoEncontrado("Prestador não encontrado.")
    if not prestador.is_active or not prestador.is_approved:
        raise PedidoInvalido("O prestador não está disponível para marcações.")
    if not cabe_no_horario(s, prestador.id, booking_date, duration):
        raise PedidoInvalido("Fora do horário de trabalho do prestador.")
    if not _slot_livre(s, prestador.id, booking_date, duration):
        raise Conflito("Horário indisponível para este prestador.")

    b = Booking(
        user_id=user.id,
        prestador_id=prestador.id,
        company_id=user.company_id,
        booking_date=booking_date,
        duration=duration,
        pillar=prestador.pillar,
        session_type=session_type,
        status=BookingStatus.SCHEDULED,
        notes=notes,
    )
    s.add(b)
    s.flush()

    quando = booking_date.strftime("%d/%m/%Y %H:%M")
    enfileirar(
        s,
        NotificationType.BOOKING_CONFIRMED,
        "Marcação confirmada",
        f"A sua sessão com {prestador.name} está marcada para {quando}.",
        recipient_id=user.id,
        booking_id=b.id,
    )
    enfileirar(
        s,
        NotificationType.BOOKING_NEW,
        "Nova marcação",
        f"Nova sessão com {user.name} em {quando}.",
        recipient_id=prestador.profile_id,
        booking_id=b.id,
    )
    logger.info("Marcação criada: %s prestador=%s data=%s", b.id, prestador.id, quando)
    return b


def criar_marcacao(
    ator: Ator,
    prestador_id: str,
    booking_date: datetime,
    duration: int = 60,
    session_type: SessionType = SessionType.INDIVIDUAL,
    notes: str | None = None,
    user_id: str | None = None,
) -> dict:
    """
    Use case: marcar sessão.
    - só o admin marca em nome de outro utilizador
    - nenhuma sessão é descontada aqui (só na conclusão)
    """
    user_id = user_id or ator.id
    if user_id != ator.id and not ator.is_admin:
        raise SemPermissao("Só pode fazer marcações para si próprio.")
    with db_session() as s:
        user = s.get(Profile, user_id)
        if not user:
            raise NaoEncontrado("Utilizador não encontrado.")
        b = criar_marcacao_em(s, user, prestador_id, booking_date, duration, session_type, notes)
        return marcacao_flat(b)


# =========================
# Estados
# =========================
def _notificar_estado(s: Session, b: Booking, tipo: NotificationType, titulo: str, texto: str) -> None:
    enfileirar(s, tipo, titulo, texto, recipient_id=b.user_id, booking_id=b.id)
    enfileirar(s, tipo, titulo, texto, recipient_id=b.prestador.profile_id, booking_id=b.id)


def _transitar(
    s: Session,
    b: Booking,
    relacao: str,
    status: BookingStatus,
    notes: str | None = None,
    reason: str | None = None,
    agora: datetime | None = None,
) -> ResultadoTransicao:
    agora = agora or datetime.utcnow()
    anterior = b.status
    if status == anterior:
        raise PedidoInvalido(f"A marcação já está no estado {status.value}.")
    if status not in TRANSICOES[anterior]:
        raise PedidoInvalido(f"Transição inválida: {anterior.value} -> {status.value}.")
    if status in SO_PRESTADOR and relacao == "user":
        raise SemPermissao("Só o prestador pode concluir ou marcar falta.")
    if status == BookingStatus.CANCELLED and relacao == "user" and b.booking_date <= agora:
        raise PedidoInvalido("Não é possível cancelar marcações passadas.")
    if status == BookingStatus.SCHEDULED:
        if b.booking_date <= agora:
            raise PedidoInvalido("Não é possível reativar marcações passadas.")
        if not _slot_livre(s, b.prestador_id, b.booking_date, b.duration, ignorar_id=b.id):
            raise Conflito("O horário já foi ocupado por outra marcação.")

    b.status = status
    if notes:
        if relacao == "prestador":
            b.prestador_notes = notes
        else:
            b.notes = notes

    descontada = reembolsada = False
    if status == BookingStatus.COMPLETED:
        descontada = deduzir_sessao_marcacao(s, b) is not None
        _notificar_estado(
            s, b, NotificationType.SESSION_COMPLETED, "Sessão concluída",
            f"A sessão com {b.prestador.name} foi concluída.",
        )
    elif status == BookingStatus.CANCELLED:
        b.cancellation_reason = reason
        reembolsada = reembolsar_sessao_marcacao(s, b)
        _notificar_estado(
            s, b, NotificationType.BOOKING_CANCELLED, "Marcação cancelada",
            f"A sessão de {b.booking_date.strftime('%d/%m/%Y %H:%M')} foi cancelada. Motivo: {reason or 'n/d'}",
        )
    else:
        _notificar_estado(
            s, b, NotificationType.BOOKING_UPDATED, "Marcação atualizada",
            f"A sessão de {b.booking_date.strftime('%d/%m/%Y %H:%M')} passou a {status.value}.",
        )

    logger.info("Marcação %s: %s -> %s", b.id, anterior.value, status.value)
    return ResultadoTransicao(b.id, anterior.value, status.value, descontada, reembolsada)


def atualizar_estado_marcacao(
    ator: Ator,
    booking_id: str,
    status: BookingStatus,
    notes: str | None = None,
    reason: str | None = None,
) -> ResultadoTransicao:
    with db_session() as s:
        b, relacao = _marcacao_acessivel(s, ator, booking_id, bloquear=True)
        return _transitar(s, b, relacao, status, notes=notes, reason=reason)


def _exigir_prestador_ou_admin(relacao: str) -> None:
    if relacao == "user":
        raise SemPermissao("Só o prestador ou um administrador pode gerir sessões.")


def concluir_sessao(ator: Ator, booking_id: str, notes: str | None = None) -> ResultadoTransicao:
    """
    Conclui a sessão e desconta-a (empresa primeiro, depois pessoal).
    Aceita marcações agendadas ou confirmadas; repetir não volta a descontar.
    """
    with db_session() as s:
        b, relacao = _marcacao_acessivel(s, ator, booking_id, bloquear=True)
        _exigir_prestador_ou_admin(relacao)
        anterior = b.status
        if anterior not in (BookingStatus.SCHEDULED, BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
            raise PedidoInvalido(f"Não é possível concluir uma marcação em estado {anterior.value}.")

        b.status = BookingStatus.COMPLETED
        if notes:
            b.prestador_notes = notes
        descontada = deduzir_sessao_marcacao(s, b) is not None
        if descontada:
            _notificar_estado(
                s, b, NotificationType.SESSION_COMPLETED, "Sessão concluída",
                f"A sessão com {b.prestador.name} foi concluída.",
            )
        logger.info("Sessão concluída: marcação=%s descontada=%s", b.id, descontada)
        return ResultadoTransicao(b.id, anterior.value, b.status.value, descontada, False)


def cancelar_com_reembolso(ator: Ator, booking_id: str, reason: str | None = None) -> ResultadoTransicao:
    """Cancela (também marcações já concluídas) e devolve a sessão descontada."""
    reason = reason or "Sessão cancelada com reembolso"
    with db_session() as s:
        b, relacao = _marcacao_acessivel(s, ator, booking_id, bloquear=True)
        _exigir_prestador_ou_admin(relacao)
        anterior = b.status
        if anterior not in (BookingStatus.SCHEDULED, BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
            raise PedidoInvalido(f"Não é possível cancelar uma marcação em estado {anterior.value}.")
        b.status = BookingStatus.CANCELLED
        b.cancellation_reason = reason
        reembolsada = reembolsar_sessao_marcacao(s, b)
        _notificar_estado(
            s, b, NotificationType.BOOKING_CANCELLED, "Marcação cancelada",
            f"A sessão de {b.booking_date.strftime('%d/%m/%Y %H:%M')} foi cancelada e a sessão devolvida.",
        )
        logger.info("Marcação %s cancelada com reembolso (reembolsada=%s)", b.id, reembolsada)
        return ResultadoTransicao(b.id, anterior.value, b.status.value, False, reembolsada)


def cancelar_marcacao(ator: Ator, booking_id: str, reason: str) -> ResultadoTransicao:
    if not (reason or "").strip():
        raise PedidoInvalido("O motivo do cancelamento é obrigatório.")
    with db_session() as s:
        b, relacao = _marcacao_acessivel(s, ator, booking_id, bloquear=True)
        if b.status == BookingStatus.CANCELLED:
            raise PedidoInvalido("A marcação já está cancelada.")
        return _transitar(s, b, relacao, BookingStatus.CANCELLED, reason=reason.strip())


def reagendar_marcacao(ator: Ator, booking_id: str, new_date: datetime, reason: str | None = None) -> dict:
    """A marcação original fica 'rescheduled' e é criada uma nova na data pedida."""
    with db_session() as s:
        b, relacao = _marcacao_acessivel(s, ator, booking_id, bloquear=True)
        _transitar(s, b, relacao, BookingStatus.RESCHEDULED, reason=reason)
        s.flush()
        nova = criar_marcacao_em(
            s,
            b.user,
            b.prestador_id,
            new_date,
            b.duration,
            b.session_type,
            notes=b.notes,
        )
        nova.prestador_notes = f"Reagendada de {b.booking_date.strftime('%d/%m/%Y %H:%M')}"
        return marcacao_flat(nova)


# =========================
# Listagens
# =========================
def listar_marcacoes(
    ator: Ator,
    status: BookingStatus | None = None,
    desde: datetime | None = None,
    ate: datetime | None = None,
) -> list[dict]:
    with db_session() as s:
        q = select(Booking).order_by(Booking.booking_date.desc())
        if ator.role == Papel.PRESTADOR:
            prestador = _prestador_do_perfil(s, ator.id)
            if not prestador:
                return []
            q = q.where(Booking.prestador_id == prestador.id)
        elif ator.role == Papel.HR:
            q = q.where(Booking.company_id == empresa_do_rh(ator))
        elif ator.role == Papel.USER:
            q = q.where(Booking.user_id == ator.id)

        if status is not None:
            q = q.where(Booking.status == status)
        if desde is not None:
            q = q.where(Booking.booking_date >= para_utc_naive(desde))
        if ate is not None:
            q = q.where(Booking.booking_date < para_utc_naive(ate))
        return [marcacao_flat(b) for b in s.scalars(q)]


def obter_marcacao(ator: Ator, booking_id: str) -> dict:
    with db_session() as s:
        b, _ = _marcacao_acessivel(s, ator, booking_id)
        return marcacao_flat(b)


# =========================
# Feedback
# =========================
def registar_feedback(ator: Ator, booking_id: str, rating: int, comment: str | None = None) -> int:
    if not 1 <= rating <= 5:
        raise PedidoInvalido("A avaliação deve estar entre 1 e 5.")
    with db_session() as s:
        b = s.get(Booking, booking_id)
        if not b:
            raise NaoEncontrado("Marcação não encontrada.")
        if b.user_id != ator.id:
            raise SemPermissao("Só o utilizador da marcação pode avaliá-la.")
        if b.status != BookingStatus.COMPLETED:
            raise PedidoInvalido("Só é possível avaliar sessões concluídas.")
        if s.execute(select(Feedback.id).where(Feedback.booking_id == b.id)).first():
            raise Conflito("Esta marcação já foi avaliada.")
        f = Feedback(booking_id=b.id, user_id=b.user_id, prestador_id=b.prestador_id, rating=rating, comment=comment)
        s.add(f)
        s.flush()
        return f.id
