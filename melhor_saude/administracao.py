from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth_service import Ator, exigir_papel
from .db import db_session
from .errors import NaoEncontrado, PedidoInvalido, SemPermissao
from .models import (
    AdminLog,
    CaseManagement,
    CaseStatus,
    ChangeRequest,
    ChangeRequestStatus,
    Feedback,
    Papel,
    Pilar,
    Prestador,
    Profile,
)

logger = logging.getLogger(__name__)

# campos do perfil do prestador que podem ser alterados via pedido
CAMPOS_ALTERAVEIS = ("name", "bio", "license_number", "specialties", "pillar")


# =========================
# Logs de administração
# =========================
def registar_acao(
    s: Session,
    admin_id: str | None,
    action_type: str,
    target_type: str,
    target_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    s.add(
        AdminLog(
            admin_id=admin_id,
            action_type=action_type,
            target_type=target_type,
            target_id=target_id,
            details=details or {},
        )
    )


def listar_logs(action_type: str | None = None, limit: int = 100) -> list[dict]:
    with db_session() as s:
        q = select(AdminLog).order_by(AdminLog.created_at.desc(), AdminLog.id.desc()).limit(limit)
        if action_type:
            q = q.where(AdminLog.action_type == action_type)
        return [
            {
                "id": log.id,
                "admin_id": log.admin_id,
                "action_type": log.action_type,
                "target_type": log.target_type,
                "target_id": log.target_id,
                "details": log.details,
                "created_at": log.created_at.isoformat(),
            }
            for log in s.scalars(q)
        ]


# =========================
# Pedidos de alteração (prestador -> admin)
# =========================
def _prestador_do_ator(s: Session, ator: Ator) -> Prestador:
    prestador = s.execute(select(Prestador).where(Prestador.profile_id == ator.id)).scalar_one_or_none()
    if not prestador:
        raise SemPermissao("Apenas prestadores podem executar esta ação.")
    return prestador


def _valor_atual(prestador: Prestador, campo: str) -> str | None:
    valor = getattr(prestador, campo)
    if isinstance(valor, Pilar):
        return valor.value
    if isinstance(valor, list):
        return ", ".join(valor)
    return valor


def pedir_alteracao(ator: Ator, field_name: str, new_value: str, reason: str | None = None) -> int:
    if field_name not in CAMPOS_ALTERAVEIS:
        raise PedidoInvalido(f"Campo não alterável: {field_name}")
    if not (new_value or "").strip():
        raise PedidoInvalido("O novo valor é obrigatório.")
    if field_name == "pillar" and new_value not in {p.value for p in Pilar}:
        raise PedidoInvalido(f"Pilar inválido: {new_value}")

    with db_session() as s:
        prestador = _prestador_do_ator(s, ator)
        cr = ChangeRequest(
            prestador_id=prestador.id,
            field_name=field_name,
            old_value=_valor_atual(prestador, field_name),
            new_value=new_value.strip(),
            reason=reason,
        )
        s.add(cr)
        s.flush()
        return cr.id


def listar_pedidos_alteracao(status: ChangeRequestStatus | None = ChangeRequestStatus.PENDING) -> list[dict]:
    with db_session() as s:
        q = select(ChangeRequest).order_by(ChangeRequest.created_at.asc())
        if status is not None:
            q = q.where(ChangeRequest.status == status)
        return [
            {
                "id": cr.id,
                "prestador_id": cr.prestador_id,
                "prestador": cr.prestador.name,
                "field_name": cr.field_name,
                "old_value": cr.old_value,
                "new_value": cr.new_value,
                "reason": cr.reason,
                "status": cr.status.value,
                "admin_notes": cr.admin_notes,
            }
            for cr in s.scalars(q)
        ]


def decidir_alteracao(ator: Ator, request_id: int, aprovar: bool, admin_notes: str | None = None) -> dict:
    """Aprovação aplica o novo valor ao prestador; rejeição só fecha o pedido."""
    exigir_papel(ator, Papel.ADMIN)
    with db_session() as s:
        cr = s.get(ChangeRequest, request_id)
        if not cr:
            raise NaoEncontrado("Pedido de alteração não encontrado.")
        if cr.status != ChangeRequestStatus.PENDING:
            raise PedidoInvalido(f"O pedido já foi {cr.status.value}.")

        if aprovar:
            prestador = cr.prestador
            if cr.field_name == "pillar":
                prestador.pillar = Pilar(cr.new_value)
            elif cr.field_name == "specialties":
                prestador.specialties = [x.strip() for x in cr.new_value.split(",") if x.strip()]
            else:
                setattr(prestador, cr.field_name, cr.new_value)
            if cr.field_name == "name":
                prestador.profile.name = cr.new_value

        cr.status = ChangeRequestStatus.APPROVED if aprovar else ChangeRequestStatus.REJECTED
        cr.admin_notes = admin_notes
        cr.reviewed_by = ator.id
        cr.reviewed_at = datetime.utcnow()

        registar_acao(
            s,
            ator.id,
            "approve_change_request" if aprovar else "reject_change_request",
            "prestador",
            cr.prestador_id,
            {"field": cr.field_name, "new_value": cr.new_value},
        )
        return {"id": cr.id, "status": cr.status.value}


# =========================
# Gestão de casos
# =========================
def abrir_caso(ator: Ator, user_id: str, title: str, notes: str | None = None) -> int:
    with db_session() as s:
        prestador = _prestador_do_ator(s, ator)
        if not s.get(Profile, user_id):
            raise NaoEncontrado("Utilizador não encontrado.")
        if not (title or "").strip():
            raise PedidoInvalido("O título é obrigatório.")
        caso = CaseManagement(user_id=user_id, prestador_id=prestador.id, title=title.strip(), notes=notes)
        s.add(caso)
        s.flush()
        return caso.id


def atualizar_caso(ator: Ator, case_id: int, status: CaseStatus | None = None, notes: str | None = None) -> dict:
    with db_session() as s:
        caso = s.get(CaseManagement, case_id)
        if not caso:
            raise NaoEncontrado("Caso não encontrado.")
        if not ator.is_admin:
            prestador = _prestador_do_ator(s, ator)
            if caso.prestador_id != prestador.id:
                raise SemPermissao("Só o prestador responsável pode atualizar o caso.")
        if status is not None:
            caso.status = status
        if notes is not None:
            caso.notes = notes
        return {"id": caso.id, "status": caso.status.value, "notes": caso.notes}


def listar_casos(ator: Ator, status: CaseStatus | None = None) -> list[dict]:
    with db_session() as s:
        q = select(CaseManagement).order_by(CaseManagement.updated_at.desc())
        if not ator.is_admin:
            q = q.where(CaseManagement.prestador_id == _prestador_do_ator(s, ator).id)
        if status is not None:
            q = q.where(CaseManagement.status == status)
        return [
            {
                "id": c.id,
                "user_id": c.user_id,
                "prestador_id": c.prestador_id,
                "title": c.title,
                "notes": c.notes,
                "status": c.status.value,
            }
            for c in s.scalars(q)
        ]


# =========================
# Feedback
# =========================
def listar_feedback(prestador_id: str | None = None, limit: int = 200) -> list[dict]:
    with db_session() as s:
        q = select(Feedback).order_by(Feedback.created_at.desc()).limit(limit)
        if prestador_id:
            q = q.where(Feedback.prestador_id == prestador_id)
        return [
            {
                "id": f.id,
                "booking_id": f.booking_id,
                "user_id": f.user_id,
                "prestador_id": f.prestador_id,
                "rating": f.rating,
                "comment": f.comment,
                "created_at": f.created_at.isoformat(),
            }
            for f in s.scalars(q)
        ]


def media_avaliacoes_prestador(prestador_id: str) -> dict:
    with db_session() as s:
        media, total = s.execute(
            select(func.avg(Feedback.rating), func.count(Feedback.id)).where(Feedback.prestador_id == prestador_id)
        ).one()
        return {"prestador_id": prestador_id, "average_rating": round(float(media), 2) if media else None, "count": total}
