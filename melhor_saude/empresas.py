from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from .administracao import registar_acao
from .auth_service import (
    Ator,
    criar_perfil,
    email_valido,
    empresa_do_rh,
    exigir_papel,
    gerar_password_temporaria,
    normalizar_email,
    perfil_flat,
)
from .db import db_session
from .errors import Conflito, NaoEncontrado, PedidoInvalido, QuotaEmpresaExcedida, SemPermissao
from .models import Company, NotificationType, Papel, Pilar, PlanType, Prestador, Profile
from .notificacoes import enfileirar
from .sessoes import sessoes_distribuidas_empresa

logger = logging.getLogger(__name__)

CAMPOS_EMPRESA = ("name", "contact_email", "contact_phone", "plan_type", "notes")


# =========================
# Helper
# =========================
def _empresa(s: Session, company_id: str) -> Company:
    c = s.get(Company, company_id)
    if not c:
        raise NaoEncontrado("Empresa não encontrada.")
    return c


def empresa_flat(c: Company) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "contact_email": c.contact_email,
        "contact_phone": c.contact_phone,
        "plan_type": c.plan_type.value,
        "sessions_allocated": c.sessions_allocated,
        "sessions_used": c.sessions_used,
        "seat_limit": c.seat_limit,
        "is_active": c.is_active,
        "notes": c.notes,
        "created_at": c.created_at.isoformat(),
    }


def contar_colaboradores(s: Session, company_id: str) -> int:
    return s.execute(
        select(func.count(Profile.id)).where(
            Profile.company_id == company_id,
            Profile.role == Papel.USER,
            Profile.is_active.is_(True),
        )
    ).scalar_one()


def verificar_lugares(s: Session, company: Company) -> None:
    """Lança QuotaEmpresaExcedida quando a empresa já ocupou todos os lugares contratados."""
    if company.seat_limit is None:
        return
    if contar_colaboradores(s, company.id) >= company.seat_limit:
        raise QuotaEmpresaExcedida(f"A empresa atingiu o limite de {company.seat_limit} colaboradores.")


# =========================
# Empresas
# =========================
def criar_empresa(
    ator: Ator,
    name: str,
    contact_email: str,
    contact_phone: str | None = None,
    plan_type: PlanType = PlanType.BASIC,
    sessions_allocated: int = 0,
    seat_limit: int | None = None,
    notes: str | None = None,
) -> str:
    exigir_papel(ator, Papel.ADMIN)
    name = (name or "").strip()
    contact_email = normalizar_email(contact_email)
    if not name or not contact_email:
        raise PedidoInvalido("Nome e email da empresa são obrigatórios.")
    if not email_valido(contact_email):
        raise PedidoInvalido("Email de contacto inválido.")
    if sessions_allocated < 0 or (seat_limit is not None and seat_limit < 0):
        raise PedidoInvalido("Sessões e lugares não podem ser negativos.")

    with db_session() as s:
        if s.execute(select(Company.id).where(Company.name == name)).first():
            raise Conflito(f"Já existe uma empresa com o nome '{name}'.")
        c = Company(
            name=name,
            contact_email=contact_email,
            contact_phone=contact_phone,
            plan_type=plan_type,
            sessions_allocated=sessions_allocated,
            seat_limit=seat_limit,
            notes=notes,
        )
        s.add(c)
        s.flush()
        registar_acao(s, ator.id, "create_company", "company", c.id, {"name": name, "plan_type": plan_type.value})
        logger.info("Empresa criada: %s", name)
        return c.id


def obter_empresa(company_id: str) -> dict:
    with db_session() as s:
        return empresa_flat(_empresa(s, company_id))


def listar_empresas(com_utilizadores: bool = False, apenas_ativas: bool = False) -> list[dict]:
    with db_session() as s:
        q = select(Company).order_by(Company.name)
        if apenas_ativas:
            q = q.where(Company.is_active.is_(True))
        if com_utilizadores:
            q = q.options(selectinload(Company.profiles))

        out = []
        for c in s.scalars(q):
            row = empresa_flat(c)
            if com_utilizadores:
                row["users"] = [perfil_flat(p) for p in sorted(c.profiles, key=lambda p: p.name)]
            out.append(row)
        return out


def atualizar_empresa(ator: Ator, company_id: str, **changes) -> dict:
    exigir_papel(ator, Papel.ADMIN)
    desconhecidos = set(changes) - set(CAMPOS_EMPRESA)
    if desconhecidos:
        raise PedidoInvalido(f"Campos não editáveis: {', '.join(sorted(desconhecidos))}")

    with db_session() as s:
        c = _empresa(s, company_id)
        if "name" in changes:
            novo = (changes["name"] or "").strip()
            if not novo:
                raise PedidoInvalido("O nome da empresa é obrigatório.")
            outra = s.execute(select(Company.id).where(Company.name == novo, Company.id != c.id)).first()
            if outra:
                raise Conflito(f"Já existe uma empresa com o nome '{novo}'.")
            changes["name"] = novo
        if "contact_email" in changes:
            changes["contact_email"] = normalizar_email(changes["contact_email"])
            if not email_valido(changes["contact_email"]):
                raise PedidoInvalido("Email de contacto inválido.")
        if "plan_type" in changes and not isinstance(changes["plan_type"], PlanType):
            changes["plan_type"] = PlanType(changes["plan_type"])

        for campo, valor in changes.items():
            setattr(c, campo, valor)

        detalhes = {k: (v.value if isinstance(v, PlanType) else v) for k, v in changes.items()}
        registar_acao(s, ator.id, "update_company", "company", c.id, detalhes)
        return empresa_flat(c)


def alterar_estado_empresa(ator: Ator, company_id: str, is_active: bool) -> dict:
    """
    Ativa/desativa a empresa e todos os seus perfis.
    Empresa e perfis mudam na mesma transação: ou tudo, ou nada.
    """
    exigir_papel(ator, Papel.ADMIN)
    with db_session() as s:
        c = _empresa(s, company_id)
        c.is_active = is_active
        res = s.execute(
            update(Profile)
            .where(Profile.company_id == c.id)
            .values(is_active=is_active)
            .execution_options(synchronize_session="fetch")
        )
        afetados = res.rowcount or 0
        registar_acao(
            s,
            ator.id,
            "enable_company" if is_active else "disable_company",
            "company",
            c.id,
            {"company_name": c.name, "users_affected": afetados},
        )
        logger.info("Empresa %s %s (%d perfis)", c.name, "ativada" if is_active else "desativada", afetados)
        return {"company_id": c.id, "is_active": c.is_active, "users_affected": afetados}


def atualizar_quota_empresa(
    ator: Ator,
    company_id: str,
    sessions_allocated: int | None = None,
    seat_limit: int | None = None,
) -> dict:
    exigir_papel(ator, Papel.ADMIN)
    with db_session() as s:
        c = _empresa(s, company_id)
        detalhes = {}
        if sessions_allocated is not None:
            distribuidas = sessoes_distribuidas_empresa(s, c.id)
            if sessions_allocated < max(distribuidas, c.sessions_used):
                raise PedidoInvalido(
                    f"O pool não pode ser inferior às sessões já distribuídas ({distribuidas}) ou usadas ({c.sessions_used})."
                )
            detalhes["sessions_allocated"] = {"old": c.sessions_allocated, "new": sessions_allocated}
            c.sessions_allocated = sessions_allocated
        if seat_limit is not None:
            if seat_limit < contar_colaboradores(s, c.id):
                raise PedidoInvalido("O limite de lugares é inferior ao número de colaboradores ativos.")
            detalhes["seat_limit"] = {"old": c.seat_limit, "new": seat_limit}
            c.seat_limit = seat_limit
        registar_acao(s, ator.id, "update_company_quota", "company", c.id, detalhes)
        return empresa_flat(c)


def resumo_empresa(company_id: str) -> dict:
    with db_session() as s:
        c = _empresa(s, company_id)
        distribuidas = sessoes_distribuidas_empresa(s, c.id)
        return {
            "company_id": c.id,
            "name": c.name,
            "sessions_allocated": c.sessions_allocated,
            "sessions_distributed": distribuidas,
            "sessions_undistributed": max(c.sessions_allocated - distribuidas, 0),
            "sessions_used": c.sessions_used,
            "sessions_remaining": max(c.sessions_allocated - c.sessions_used, 0),
            "employees": contar_colaboradores(s, c.id),
            "seat_limit": c.seat_limit,
        }


# =========================
# Utilizadores
# =========================
def criar_utilizador_empresa(
    ator: Ator,
    email: str,
    name: str,
    role: Papel = Papel.USER,
    company_id: str | None = None,
    department: str | None = None,
    job_title: str | None = None,
) -> dict:
    """Cria a conta com password temporária (devolvida uma única vez) e envia boas-vindas."""
    exigir_papel(ator, Papel.ADMIN, Papel.HR)
    if ator.role == Papel.HR:
        company_id = company_id or empresa_do_rh(ator)
        if company_id != empresa_do_rh(ator):
            raise SemPermissao("RH só pode criar utilizadores da sua empresa.")
        if role != Papel.USER:
            raise SemPermissao("RH só pode criar colaboradores.")
    if role == Papel.PRESTADOR:
        raise PedidoInvalido("Prestadores são criados através do registo de prestador.")

    password = gerar_password_temporaria()
    with db_session() as s:
        if company_id:
            c = _empresa(s, company_id)
            if not c.is_active:
                raise PedidoInvalido("A empresa está inativa.")
            if role == Papel.USER:
                verificar_lugares(s, c)
        p = criar_perfil(s, email, password, name, role, company_id, department, job_title)
        enfileirar(
            s,
            NotificationType.WELCOME,
            "Bem-vindo à Melhor Saúde",
            f"Olá {p.name}, a sua conta foi criada. Entre com o email {p.email} e altere a password temporária.",
            recipient_id=p.id,
        )
        registar_acao(s, ator.id, "create_user", "profile", p.id, {"email": p.email, "role": role.value})
        return {**perfil_flat(p), "temporary_password": password}


def alterar_estado_utilizador(ator: Ator, profile_id: str, is_active: bool) -> dict:
    exigir_papel(ator, Papel.ADMIN, Papel.HR)
    with db_session() as s:
        p = s.get(Profile, profile_id)
        if not p:
            raise NaoEncontrado("Utilizador não encontrado.")
        if ator.role == Papel.HR and (p.company_id != empresa_do_rh(ator) or p.role != Papel.USER):
            raise SemPermissao("RH só pode gerir colaboradores da sua empresa.")
        if p.id == ator.id and not is_active:
            raise PedidoInvalido("Não pode desativar a sua própria conta.")
        p.is_active = is_active
        registar_acao(s, ator.id, "enable_user" if is_active else "disable_user", "profile", p.id, {"email": p.email})
        return perfil_flat(p)


def listar_utilizadores(company_id: str | None = None, role: Papel | None = None) -> list[dict]:
    with db_session() as s:
        q = select(Profile).order_by(Profile.name)
        if company_id:
            q = q.where(Profile.company_id == company_id)
        if role is not None:
            q = q.where(Profile.role == role)
        return [perfil_flat(p) for p in s.scalars(q)]


# =========================
# Prestadores
# =========================
def prestador_flat(p: Prestador) -> dict:
    return {
        "id": p.id,
        "profile_id": p.profile_id,
        "name": p.name,
        "email": p.email,
        "pillar": p.pillar.value,
        "specialties": list(p.specialties or []),
        "license_number": p.license_number,
        "bio": p.bio,
        "is_active": p.is_active,
        "is_approved": p.is_approved,
    }


def criar_prestador(
    ator: Ator,
    name: str,
    email: str,
    pillar: Pilar,
    specialties: list[str] | None = None,
    license_number: str | None = None,
    bio: str | None = None,
    is_approved: bool = True,
) -> dict:
    exigir_papel(ator, Papel.ADMIN)
    password = gerar_password_temporaria()
    with db_session() as s:
        perfil = criar_perfil(s, email, password, name, Papel.PRESTADOR)
        p = Prestador(
            profile_id=perfil.id,
            name=perfil.name,
            email=perfil.email,
            pillar=pillar,
            specialties=[x.strip() for x in (specialties or []) if x.strip()],
            license_number=license_number,
            bio=bio,
            is_approved=is_approved,
        )
        s.add(p)
        s.flush()
        enfileirar(
            s,
            NotificationType.WELCOME,
            "Bem-vindo à rede Melhor Saúde",
            f"Olá {p.name}, a sua conta de prestador foi criada.",
            recipient_id=perfil.id,
        )
        registar_acao(s, ator.id, "create_prestador", "prestador", p.id, {"email": p.email, "pillar": pillar.value})
        return {**prestador_flat(p), "temporary_password": password}


def alterar_estado_prestador(
    ator: Ator,
    prestador_id: str,
    is_active: bool | None = None,
    is_approved: bool | None = None,
) -> dict:
    exigir_papel(ator, Papel.ADMIN)
    with db_session() as s:
        p = s.get(Prestador, prestador_id)
        if not p:
            raise NaoEncontrado("Prestador não encontrado.")
        detalhes = {}
        if is_active is not None:
            p.is_active = is_active
            p.profile.is_active = is_active
            detalhes["is_active"] = is_active
        if is_approved is not None:
            p.is_approved = is_approved
            detalhes["is_approved"] = is_approved
        registar_acao(s, ator.id, "update_prestador_status", "prestador", p.id, detalhes)
        return prestador_flat(p)


def obter_prestador(prestador_id: str) -> dict:
    with db_session() as s:
        p = s.get(Prestador, prestador_id)
        if not p:
            raise NaoEncontrado("Prestador não encontrado.")
        return prestador_flat(p)


def prestador_do_perfil(profile_id: str) -> dict | None:
    with db_session() as s:
        p = s.execute(select(Prestador).where(Prestador.profile_id == profile_id)).scalar_one_or_none()
        return prestador_flat(p) if p else None


def listar_prestadores(pillar: Pilar | None = None, apenas_disponiveis: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(Prestador).order_by(Prestador.name)
        if pillar is not None:
            q = q.where(Prestador.pillar == pillar)
        if apenas_disponiveis:
            q = q.where(Prestador.is_active.is_(True), Prestador.is_approved.is_(True))
        return [prestador_flat(p) for p in s.scalars(q)]
