from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from .auth_service import Ator
from .config import WORKDAY_END_HOUR, WORKDAY_START_HOUR
from .db import db_session
from .errors import Conflito, NaoEncontrado, PedidoInvalido, SemPermissao
from .models import (
    Booking,
    BookingStatus,
    BreakType,
    LeaveType,
    Prestador,
    PrestadorAvailability,
    PrestadorBreak,
    PrestadorLeave,
)

logger = logging.getLogger(__name__)

DIAS_SEMANA = ("segunda", "terça", "quarta", "quinta", "sexta", "sábado", "domingo")

Intervalo = tuple[datetime, datetime]


# =========================
# Helper
# =========================
def _prestador_gerivel(s: Session, ator: Ator, prestador_id: str) -> Prestador:
    """O próprio prestador ou um admin."""
    p = s.get(Prestador, prestador_id)
    if not p:
        raise NaoEncontrado("Prestador não encontrado.")
    if not ator.is_admin and p.profile_id != ator.id:
        raise SemPermissao("Só pode gerir a sua própria disponibilidade.")
    return p


def _validar_dia(day_of_week: int) -> None:
    if not 0 <= day_of_week <= 6:
        raise PedidoInvalido("Dia da semana inválido (0 = segunda ... 6 = domingo).")


def _validar_horas(inicio: time, fim: time) -> None:
    if fim <= inicio:
        raise PedidoInvalido("A hora de fim tem de ser posterior à de início.")


def _hm(t: time) -> str:
    return t.strftime("%H:%M")


def horario_flat(a: PrestadorAvailability) -> dict:
    return {
        "id": a.id,
        "prestador_id": a.prestador_id,
        "day_of_week": a.day_of_week,
        "day_name": DIAS_SEMANA[a.day_of_week],
        "start_time": _hm(a.start_time),
        "end_time": _hm(a.end_time),
        "is_available": a.is_available,
    }


def pausa_flat(p: PrestadorBreak) -> dict:
    return {
        "id": p.id,
        "prestador_id": p.prestador_id,
        "break_date": p.break_date.isoformat() if p.break_date else None,
        "day_of_week": p.day_of_week,
        "start_time": _hm(p.start_time),
        "end_time": _hm(p.end_time),
        "is_recurring": p.is_recurring,
        "break_type": p.break_type.value,
        "description": p.description,
    }


def ausencia_flat(a: PrestadorLeave) -> dict:
    return {
        "id": a.id,
        "prestador_id": a.prestador_id,
        "start_date": a.start_date.isoformat(),
        "end_date": a.end_date.isoformat(),
        "leave_type": a.leave_type.value,
        "reason": a.reason,
    }


# =========================
# Horário semanal
# =========================
def definir_horario(
    ator: Ator,
    prestador_id: str,
    day_of_week: int,
    start_time: time,
    end_time: time,
    is_available: bool = True,
) -> dict:
    """Acrescenta uma janela de trabalho; janelas do mesmo dia não se podem sobrepor."""
    _validar_dia(day_of_week)
    _validar_horas(start_time, end_time)
    with db_session() as s:
        p = _prestador_gerivel(s, ator, prestador_id)
        sobreposta = s.execute(
            select(PrestadorAvailability.id).where(
                PrestadorAvailability.prestador_id == p.id,
                PrestadorAvailability.day_of_week == day_of_week,
                PrestadorAvailability.start_time < end_time,
                PrestadorAvailability.end_time > start_time,
            )
        ).first()
        if sobreposta:
            raise Conflito(f"Já existe um horário sobreposto à {DIAS_SEMANA[day_of_week]}.")
        a = PrestadorAvailability(
            prestador_id=p.id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            is_available=is_available,
        )
        s.add(a)
        s.flush()
        logger.info("Horário %s %s-%s definido para prestador=%s", day_of_week, _hm(start_time), _hm(end_time), p.id)
        return horario_flat(a)


def remover_horario(ator: Ator, availability_id: str) -> None:
    with db_session() as s:
        a = s.get(PrestadorAvailability, availability_id)
        if not a:
            raise NaoEncontrado("Horário não encontrado.")
        _prestador_gerivel(s, ator, a.prestador_id)
        s.delete(a)


# =========================
# Pausas
# =========================
def adicionar_pausa(
    ator: Ator,
    prestador_id: str,
    start_time: time,
    end_time: time,
    break_date: date | None = None,
    day_of_week: int | None = None,
    break_type: BreakType = BreakType.OTHER,
    description: str | None = None,
) -> dict:
    """
    Pausa pontual (break_date) ou recorrente (day_of_week), nunca as duas.
    Marcações já existentes no intervalo mantêm-se.
    """
    _validar_horas(start_time, end_time)
    if (break_date is None) == (day_of_week is None):
        raise PedidoInvalido("Indique uma data (pausa pontual) ou um dia da semana (pausa recorrente).")
    if day_of_week is not None:
        _validar_dia(day_of_week)
    with db_session() as s:
        p = _prestador_gerivel(s, ator, prestador_id)
        pausa = PrestadorBreak(
            prestador_id=p.id,
            break_date=break_date,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            is_recurring=day_of_week is not None,
            break_type=break_type,
            description=(description or "").strip() or None,
        )
        s.add(pausa)
        s.flush()
        return pausa_flat(pausa)


def remover_pausa(ator: Ator, break_id: str) -> None:
    with db_session() as s:
        pausa = s.get(PrestadorBreak, break_id)
        if not pausa or not pausa.is_active:
            raise NaoEncontrado("Pausa não encontrada.")
        _prestador_gerivel(s, ator, pausa.prestador_id)
        pausa.is_active = False


# =========================
# Ausências
# =========================
def registar_ausencia(
    ator: Ator,
    prestador_id: str,
    start_date: date,
    end_date: date,
    leave_type: LeaveType = LeaveType.VACATION,
    reason: str | None = None,
) -> dict:
    """
    Regista a ausência e devolve as marcações ativas que caem no período
    (ficam por resolver: não são canceladas automaticamente).
    """
    if end_date < start_date:
        raise PedidoInvalido("A data de fim tem de ser igual ou posterior à de início.")
    with db_session() as s:
        p = _prestador_gerivel(s, ator, prestador_id)
        ausencia = PrestadorLeave(
            prestador_id=p.id,
            start_date=start_date,
            end_date=end_date,
            leave_type=leave_type,
            reason=(reason or "").strip() or None,
            created_by=ator.id,
        )
        s.add(ausencia)
        s.flush()

        inicio = datetime.combine(start_date, time.min)
        fim = datetime.combine(end_date + timedelta(days=1), time.min)
        afetadas = s.scalars(
            select(Booking.id).where(
                Booking.prestador_id == p.id,
                Booking.status.in_((BookingStatus.SCHEDULED, BookingStatus.CONFIRMED)),
                Booking.booking_date >= inicio,
                Booking.booking_date < fim,
            )
        ).all()
        if afetadas:
            logger.warning("Ausência de prestador=%s coincide com %s marcação(ões)", p.id, len(afetadas))
        out = ausencia_flat(ausencia)
        out["conflicting_bookings"] = list(afetadas)
        return out


def remover_ausencia(ator: Ator, leave_id: str) -> None:
    with db_session() as s:
        a = s.get(PrestadorLeave, leave_id)
        if not a:
            raise NaoEncontrado("Ausência não encontrada.")
        _prestador_gerivel(s, ator, a.prestador_id)
        s.delete(a)


def obter_disponibilidade(prestador_id: str) -> dict:
    with db_session() as s:
        if not s.get(Prestador, prestador_id):
            raise NaoEncontrado("Prestador não encontrado.")
        horario = s.scalars(
            select(PrestadorAvailability)
            .where(PrestadorAvailability.prestador_id == prestador_id)
            .order_by(PrestadorAvailability.day_of_week, PrestadorAvailability.start_time)
        )
        pausas = s.scalars(
            select(PrestadorBreak)
            .where(PrestadorBreak.prestador_id == prestador_id, PrestadorBreak.is_active.is_(True))
            .order_by(PrestadorBreak.start_time)
        )
        ausencias = s.scalars(
            select(PrestadorLeave)
            .where(PrestadorLeave.prestador_id == prestador_id)
            .order_by(PrestadorLeave.start_date)
        )
        return {
            "schedule": [horario_flat(a) for a in horario],
            "breaks": [pausa_flat(p) for p in pausas],
            "leave": [ausencia_flat(a) for a in ausencias],
        }


# =========================
# Consulta (usada pelas marcações)
# =========================
def em_ausencia(s: Session, prestador_id: str, dia: date) -> bool:
    return s.execute(
        select(PrestadorLeave.id).where(
            PrestadorLeave.prestador_id == prestador_id,
            PrestadorLeave.start_date <= dia,
            PrestadorLeave.end_date >= dia,
        )
    ).first() is not None


def _tem_horario(s: Session, prestador_id: str) -> bool:
    return s.execute(
        select(PrestadorAvailability.id).where(PrestadorAvailability.prestador_id == prestador_id)
    ).first() is not None


def _pausas_do_dia(s: Session, prestador_id: str, dia: date) -> list[Intervalo]:
    q = select(PrestadorBreak).where(
        PrestadorBreak.prestador_id == prestador_id,
        PrestadorBreak.is_active.is_(True),
        or_(
            PrestadorBreak.break_date == dia,
            and_(PrestadorBreak.is_recurring.is_(True), PrestadorBreak.day_of_week == dia.weekday()),
        ),
    )
    return [(datetime.combine(dia, p.start_time), datetime.combine(dia, p.end_time)) for p in s.scalars(q)]


def _subtrair(janelas: list[Intervalo], pausas: list[Intervalo]) -> list[Intervalo]:
    for p_ini, p_fim in pausas:
        restantes = []
        for ini, fim in janelas:
            if p_fim <= ini or p_ini >= fim:
                restantes.append((ini, fim))
                continue
            if ini < p_ini:
                restantes.append((ini, p_ini))
            if p_fim < fim:
                restantes.append((p_fim, fim))
        janelas = restantes
    return janelas


def janelas_do_dia(s: Session, prestador_id: str, dia: date) -> list[Intervalo]:
    """
    Intervalos de trabalho do prestador nesse dia, já sem pausas.
    Sem horário configurado vale o dia de trabalho global. Em ausência não há janelas.
    """
    if em_ausencia(s, prestador_id, dia):
        return []
    if _tem_horario(s, prestador_id):
        q = (
            select(PrestadorAvailability)
            .where(
                PrestadorAvailability.prestador_id == prestador_id,
                PrestadorAvailability.day_of_week == dia.weekday(),
                PrestadorAvailability.is_available.is_(True),
            )
            .order_by(PrestadorAvailability.start_time)
        )
        janelas = [(datetime.combine(dia, a.start_time), datetime.combine(dia, a.end_time)) for a in s.scalars(q)]
    else:
        janelas = [(datetime.combine(dia, time(WORKDAY_START_HOUR)), datetime.combine(dia, time(WORKDAY_END_HOUR)))]
    return sorted(_subtrair(janelas, _pausas_do_dia(s, prestador_id, dia)))


def cabe_no_horario(s: Session, prestador_id: str, start: datetime, duracao: int) -> bool:
    """
    Com horário configurado, [start, start + duracao) tem de caber numa janela do dia.
    Sem horário aceita qualquer hora, desde que não caia numa ausência nem numa pausa.
    """
    end = start + timedelta(minutes=duracao)
    dia = start.date()
    if _tem_horario(s, prestador_id):
        return any(ini <= start and end <= fim for ini, fim in janelas_do_dia(s, prestador_id, dia))
    ultimo_dia = (end - timedelta(minutes=1)).date()
    if em_ausencia(s, prestador_id, dia) or em_ausencia(s, prestador_id, ultimo_dia):
        return False
    return not any(ini < end and start < fim for ini, fim in _pausas_do_dia(s, prestador_id, dia))
