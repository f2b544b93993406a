from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .auth_models import new_uuid
from .auth_service import Ator, exigir_papel
from .db import db_session
from .errors import NaoEncontrado, PedidoInvalido, QuotaEmpresaExcedida, SemPermissao, SemSessoesDisponiveis
from .models import (
    AllocationType,
    Booking,
    Company,
    Papel,
    Prestador,
    Profile,
    SessionAllocation,
    SessionType,
    SessionUsage,
    UsageStatus,
)

logger = logging.getLogger(__name__)

# ordem de consumo: sessões pagas pela empresa primeiro
ORDEM_CONSUMO = (AllocationType.COMPANY, AllocationType.PERSONAL, AllocationType.BONUS)


# =========================
# Consultas internas
# =========================
def alocacao_ativa(s: Session, profile_id: str, tipo: AllocationType) -> SessionAllocation | None:
    q = select(SessionAllocation).where(
        SessionAllocation.profile_id == profile_id,
        SessionAllocation.allocation_type == tipo,
        SessionAllocation.is_active.is_(True),
    )
    return s.execute(q).scalar_one_or_none()


def _alocacao_disponivel(s: Session, profile_id: str, tipo: AllocationType, agora: datetime) -> SessionAllocation | None:
    q = (
        select(SessionAllocation)
        .where(
            SessionAllocation.profile_id == profile_id,
            SessionAllocation.allocation_type == tipo,
            SessionAllocation.is_active.is_(True),
            or_(SessionAllocation.expires_at.is_(None), SessionAllocation.expires_at > agora),
            SessionAllocation.sessions_used < SessionAllocation.sessions_allocated,
        )
        .with_for_update()
        .limit(1)
    )
    return s.execute(q).scalar_one_or_none()


def sessoes_distribuidas_empresa(s: Session, company_id: str) -> int:
    """Soma das quotas ativas do tipo 'company' atribuídas aos colaboradores."""
    total = s.execute(
        select(func.coalesce(func.sum(SessionAllocation.sessions_allocated), 0)).where(
            SessionAllocation.company_id == company_id,
            SessionAllocation.allocation_type == AllocationType.COMPANY,
            SessionAllocation.is_active.is_(True),
        )
    ).scalar_one()
    return int(total)


def _alocacao_flat(a: SessionAllocation) -> dict:
    return {
        "id": a.id,
        "allocation_type": a.allocation_type.value,
        "sessions_allocated": a.sessions_allocated,
        "sessions_used": a.sessions_used,
        "remaining": a.remaining,
        "is_active": a.is_active,
        "reason": a.reason,
        "expires_at": a.expires_at.isoformat() if a.expires_at else None,
        "replaces_id": a.replaces_id,
        "created_at": a.created_at.isoformat(),
    }


# =========================
# Atribuição (append + desativa)
# =========================
def definir_quota(
    s: Session,
    profile: Profile,
    tipo: AllocationType,
    novo_total: int,
    allocated_by: str | None = None,
    reason: str | None = None,
    expires_at: datetime | None = None,
) -> SessionAllocation:
    """
    Substitui a quota ativa de (perfil, tipo) por uma linha nova com `novo_total`.
    A linha anterior fica inativa e intacta; `sessions_used` transita para a nova.
    Quotas do tipo empresa consomem o pool contratado pela empresa.
    """
    anterior = alocacao_ativa(s, profile.id, tipo)
    usadas = anterior.sessions_used if anterior else 0
    if novo_total < usadas:
        raise PedidoInvalido(f"O total ({novo_total}) não pode ser inferior às sessões já usadas ({usadas}).")

    company_id = None
    if tipo == AllocationType.COMPANY:
        if not profile.company_id:
            raise PedidoInvalido("O utilizador não pertence a nenhuma empresa.")
        company = s.get(Company, profile.company_id)
        if not company or not company.is_active:
            raise PedidoInvalido("Empresa inexistente ou inativa.")
        ja_distribuidas = sessoes_distribuidas_empresa(s, company.id)
        if anterior and anterior.company_id == company.id:
            ja_distribuidas -= anterior.sessions_allocated
        if ja_distribuidas + novo_total > company.sessions_allocated:
            livres = max(company.sessions_allocated - ja_distribuidas, 0)
            raise QuotaEmpresaExcedida(
                f"A empresa só tem {livres} sessões por distribuir.",
                details={"company_id": company.id, "available": livres, "requested": novo_total},
            )
        company_id = company.id

    if anterior:
        anterior.is_active = False
        s.flush()

    nova = SessionAllocation(
        profile_id=profile.id,
        company_id=company_id,
        allocation_type=tipo,
        sessions_allocated=novo_total,
        sessions_used=usadas,
        is_active=True,
        reason=reason,
        allocated_by=allocated_by,
        expires_at=expires_at if expires_at is not None else (anterior.expires_at if anterior else None),
        replaces_id=anterior.id if anterior else None,
    )
    s.add(nova)
    s.flush()
    return nova


def _perfil_gerivel(s: Session, ator: Ator, profile_id: str, tipo: AllocationType) -> Profile:
    exigir_papel(ator, Papel.ADMIN, Papel.HR)
    profile = s.get(Profile, profile_id)
    if not profile:
        raise NaoEncontrado("Utilizador não encontrado.")
    if ator.role == Papel.HR:
        if not ator.company_id or profile.company_id != ator.company_id:
            raise SemPermissao("Só pode gerir sessões de colaboradores da sua empresa.")
        if tipo != AllocationType.COMPANY:
            raise SemPermissao("RH só pode atribuir sessões da empresa.")
    return profile


def atribuir_sessoes(
    ator: Ator,
    profile_id: str,
    allocation_type: AllocationType,
    quantidade: int,
    reason: str | None = None,
    expires_at: datetime | None = None,
) -> dict:
    if quantidade <= 0:
        raise PedidoInvalido("A quantidade de sessões deve ser positiva.")
    with db_session() as s:
        profile = _perfil_gerivel(s, ator, profile_id, allocation_type)
        anterior = alocacao_ativa(s, profile.id, allocation_type)
        total = (anterior.sessions_allocated if anterior else 0) + quantidade
        nova = definir_quota(s, profile, allocation_type, total, ator.id, reason, expires_at)
        logger.info(
            "Atribuídas %d sessões %s a %s (total %d)", quantidade, allocation_type.value, profile.email, total
        )
        return _alocacao_flat(nova)


def ajustar_quota_utilizador(
    ator: Ator,
    profile_id: str,
    allocation_type: AllocationType,
    total: int,
    reason: str | None = None,
) -> dict:
    if total < 0:
        raise PedidoInvalido("O total de sessões não pode ser negativo.")
    with db_session() as s:
        profile = _perfil_gerivel(s, ator, profile_id, allocation_type)
        nova = definir_quota(s, profile, allocation_type, total, ator.id, reason)
        logger.info("Quota %s de %s ajustada para %d", allocation_type.value, profile.email, total)
        return _alocacao_flat(nova)


def listar_alocacoes(profile_id: str, incluir_inativas: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(SessionAllocation).where(SessionAllocation.profile_id == profile_id)
        if not incluir_inativas:
            q = q.where(SessionAllocation.is_active.is_(True))
        q = q.order_by(SessionAllocation.created_at.desc())
        return [_alocacao_flat(a) for a in s.scalars(q)]


def saldo_sessoes(profile_id: str, agora: datetime | None = None) -> dict:
    agora = agora or datetime.utcnow()
    with db_session() as s:
        q = select(SessionAllocation).where(
            SessionAllocation.profile_id == profile_id,
            SessionAllocation.is_active.is_(True),
        )
        por_tipo = {}
        for a in s.scalars(q):
            expirada = a.expires_at is not None and a.expires_at <= agora
            por_tipo[a.allocation_type.value] = {
                "allocated": a.sessions_allocated,
                "used": a.sessions_used,
                "remaining": 0 if expirada else a.remaining,
                "expired": expirada,
                "expires_at": a.expires_at.isoformat() if a.expires_at else None,
            }
        return {
            "profile_id": profile_id,
            "allocations": por_tipo,
            "total_remaining": sum(v["remaining"] for v in por_tipo.values()),
        }


# =========================
# Consumo
# =========================
def _somar_usadas(s: Session, modelo, row_id: str, delta: int, limitar: bool = False) -> bool:
    """
    Soma `delta` a sessions_used no próprio UPDATE (sem ler e reescrever o valor).
    Com `limitar` não passa de sessions_allocated; nunca desce abaixo de zero.
    """
    novo = modelo.sessions_used + delta
    cond = [modelo.id == row_id, novo >= 0]
    if limitar:
        cond.append(novo <= modelo.sessions_allocated)
    res = s.execute(
        update(modelo).where(*cond).values(sessions_used=novo).execution_options(synchronize_session=False)
    )
    return bool(res.rowcount)


def usar_sessao(
    s: Session,
    profile_id: str,
    allocation_type: AllocationType,
    booking_id: str | None = None,
    prestador_id: str | None = None,
    session_type: SessionType = SessionType.INDIVIDUAL,
    session_date: datetime | None = None,
    duration: int | None = None,
    notes: str | None = None,
    usage_id: str | None = None,
) -> SessionUsage:
    agora = datetime.utcnow()
    alloc = _alocacao_disponivel(s, profile_id, allocation_type, agora)
    # outro pedido pode ter gasto a última sessão entre a leitura e o UPDATE
    if not alloc or not _somar_usadas(s, SessionAllocation, alloc.id, 1, limitar=True):
        raise SemSessoesDisponiveis(f"Sem sessões do tipo {allocation_type.value} disponíveis.")
    s.expire(alloc, ["sessions_used"])
    if alloc.allocation_type == AllocationType.COMPANY and alloc.company_id:
        _somar_usadas(s, Company, alloc.company_id, 1)

    usage = SessionUsage(
        id=usage_id or new_uuid(),
        allocation_id=alloc.id,
        profile_id=profile_id,
        booking_id=booking_id,
        prestador_id=prestador_id,
        allocation_type=alloc.allocation_type,
        session_type=session_type,
        session_date=session_date or agora,
        session_duration=duration,
        status=UsageStatus.USED,
        notes=notes,
    )
    s.add(usage)
    s.flush()
    logger.info("Sessão descontada: perfil=%s tipo=%s restam=%d", profile_id, allocation_type.value, alloc.remaining)
    return usage


def _tipo_com_saldo(s: Session, profile_id: str) -> AllocationType | None:
    agora = datetime.utcnow()
    for tipo in ORDEM_CONSUMO:
        if _alocacao_disponivel(s, profile_id, tipo, agora):
            return tipo
    return None


def usar_sessao_avulsa(
    ator: Ator,
    profile_id: str | None = None,
    allocation_type: AllocationType | None = None,
    session_type: SessionType = SessionType.INDIVIDUAL,
    notes: str | None = None,
) -> dict:
    """Consumo manual de uma sessão (fora de uma marcação)."""
    profile_id = profile_id or ator.id
    if profile_id != ator.id and not ator.is_admin:
        raise SemPermissao("Só pode usar as suas próprias sessões.")

    with db_session() as s:
        if not s.get(Profile, profile_id):
            raise NaoEncontrado("Utilizador não encontrado.")
        tipo = allocation_type or _tipo_com_saldo(s, profile_id)
        if tipo is None:
            raise SemSessoesDisponiveis("O utilizador não tem sessões disponíveis.")
        usage = usar_sessao(s, profile_id, tipo, session_type=session_type, notes=notes)
        return {
            "usage_id": usage.id,
            "allocation_id": usage.allocation_id,
            "allocation_type": usage.allocation_type.value,
            "remaining": usage.allocation.remaining,
        }


def deduzir_sessao_marcacao(s: Session, booking: Booking) -> SessionUsage | None:
    """
    Desconta uma sessão pela marcação concluída, no máximo uma vez.
    Devolve None se a marcação já tinha sessão descontada.

    O desconto é reclamado com um UPDATE condicional (session_usage_id IS NULL):
    de dois pedidos concorrentes só um altera a linha, o outro vê rowcount 0.
    """
    if booking.session_usage_id:
        return None
    usage_id = new_uuid()
    res = s.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.session_usage_id.is_(None))
        .values(session_usage_id=usage_id)
        .execution_options(synchronize_session=False)
    )
    if not res.rowcount:
        logger.info("Marcação %s já tinha sessão descontada", booking.id)
        return None

    tipo = _tipo_com_saldo(s, booking.user_id)
    if tipo is None:
        raise SemSessoesDisponiveis("O utilizador não tem sessões disponíveis para concluir a marcação.")
    usage = usar_sessao(
        s,
        booking.user_id,
        tipo,
        booking_id=booking.id,
        prestador_id=booking.prestador_id,
        session_type=booking.session_type,
        session_date=booking.booking_date,
        duration=booking.duration,
        usage_id=usage_id,
    )
    booking.session_usage_id = usage.id
    return usage


def reembolsar_sessao_marcacao(s: Session, booking: Booking) -> bool:
    """Devolve a sessão descontada pela marcação. False se não havia nada a devolver."""
    if not booking.session_usage_id:
        return False
    usage = s.get(SessionUsage, booking.session_usage_id)
    s.execute(
        update(Booking)
        .where(Booking.id == booking.id)
        .values(session_usage_id=None)
        .execution_options(synchronize_session=False)
    )
    booking.session_usage_id = None
    if not usage:
        return False
    res = s.execute(
        update(SessionUsage)
        .where(SessionUsage.id == usage.id, SessionUsage.status == UsageStatus.USED)
        .values(status=UsageStatus.REFUNDED)
        .execution_options(synchronize_session=False)
    )
    s.expire(usage, ["status"])
    if not res.rowcount:
        return False

    # a quota pode ter sido substituída depois do desconto: devolve à linha ativa
    alvo = alocacao_ativa(s, usage.profile_id, usage.allocation_type) or usage.allocation
    _somar_usadas(s, SessionAllocation, alvo.id, -1)
    s.expire(alvo, ["sessions_used"])
    if usage.allocation_type == AllocationType.COMPANY and alvo.company_id:
        _somar_usadas(s, Company, alvo.company_id, -1)

    logger.info("Sessão reembolsada: marcação=%s utilização=%s", booking.id, usage.id)
    return True


def historico_sessoes(profile_id: str, limit: int = 100) -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(SessionUsage, Prestador.name.label("prestador_nome"))
            .outerjoin(Prestador, Prestador.id == SessionUsage.prestador_id)
            .where(SessionUsage.profile_id == profile_id)
            .order_by(SessionUsage.session_date.desc(), SessionUsage.created_at.desc())
            .limit(limit)
        ).all()
        return [
            {
                "id": u.id,
                "booking_id": u.booking_id,
                "prestador": nome,
                "allocation_type": u.allocation_type.value,
                "session_type": u.session_type.value,
                "session_date": u.session_date.isoformat(),
                "duration": u.session_duration,
                "status": u.status.value,
                "notes": u.notes,
            }
            for u, nome in rows
        ]
