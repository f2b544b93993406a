from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .auth_models import Papel, PasswordResetToken, Profile
from .auth_security import hash_password, verify_password
from .config import PASSWORD_RESET_EXPIRE_HOURS
from .db import db_session
from .errors import Conflito, PedidoInvalido, SemPermissao
from .models import NotificationType
from .notificacoes import enfileirar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ator:
    """Quem executa o caso de uso (extraído do token na API, ou do CLI)."""
    id: str
    role: Papel
    email: str
    company_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Papel.ADMIN


def ator_de(profile: Profile) -> Ator:
    return Ator(id=profile.id, role=profile.role, email=profile.email, company_id=profile.company_id)


def exigir_papel(ator: Ator, *papeis: Papel) -> None:
    if ator.role not in papeis:
        nomes = " ou ".join(p.value for p in papeis)
        raise SemPermissao(f"Sem permissão. Papel necessário: {nomes}")


def empresa_do_rh(ator: Ator) -> str:
    """Empresa que um RH pode ver; um RH sem empresa não vê nada."""
    if not ator.company_id:
        raise SemPermissao("Conta de RH sem empresa associada.")
    return ator.company_id


def normalizar_email(email: str) -> str:
    return (email or "").strip().lower()


def email_valido(email: str) -> bool:
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def gerar_password_temporaria() -> str:
    return secrets.token_urlsafe(9)


def criar_perfil(
    s: Session,
    email: str,
    password: str,
    name: str,
    role: Papel = Papel.USER,
    company_id: str | None = None,
    department: str | None = None,
    job_title: str | None = None,
) -> Profile:
    email = normalizar_email(email)
    if not email or not password:
        raise PedidoInvalido("Email e password são obrigatórios.")
    if not email_valido(email):
        raise PedidoInvalido("Email inválido.")
    if not (name or "").strip():
        raise PedidoInvalido("O nome é obrigatório.")

    exists = s.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
    if exists:
        raise Conflito("Email já registado.")

    p = Profile(
        email=email,
        name=name.strip(),
        password_hash=hash_password(password),
        role=role,
        company_id=company_id,
        department=department,
        job_title=job_title,
        is_active=True,
    )
    s.add(p)
    s.flush()
    return p


def registar_utilizador(
    email: str,
    password: str,
    name: str,
    role: Papel = Papel.USER,
    company_id: str | None = None,
) -> str:
    with db_session() as s:
        p = criar_perfil(s, email, password, name, role=role, company_id=company_id)
        logger.info("Perfil criado: %s (%s)", p.email, p.role.value)
        return p.id


def autenticar(email: str, password: str) -> Profile | None:
    email = normalizar_email(email)
    with db_session() as s:
        p = s.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
        if not p or not p.is_active:
            return None
        if not verify_password(password, p.password_hash):
            return None
        return p


def obter_perfil(profile_id: str) -> Profile | None:
    with db_session() as s:
        return s.get(Profile, profile_id)


def alterar_password(profile_id: str, password_atual: str, nova_password: str) -> bool:
    if len(nova_password or "") < 8:
        raise PedidoInvalido("A nova password deve ter pelo menos 8 caracteres.")
    with db_session() as s:
        p = s.get(Profile, profile_id)
        if not p or not verify_password(password_atual, p.password_hash):
            return False
        p.password_hash = hash_password(nova_password)
        return True


# =========================
# Reposição de password
# =========================
def _hash_token(token: str) -> str:
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def pedir_reposicao_password(email: str, agora: datetime | None = None) -> str | None:
    """
    Gera um token de reposição e envia-o por notificação.
    Devolve o token (para o CLI/testes); a API nunca o expõe nem revela se o email existe.
    Pedidos anteriores ainda por usar deixam de valer.
    """
    agora = agora or datetime.utcnow()
    email = normalizar_email(email)
    with db_session() as s:
        p = s.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
        if not p or not p.is_active:
            logger.info("Reposição de password pedida para email desconhecido ou inativo")
            return None

        s.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.profile_id == p.id, PasswordResetToken.used_at.is_(None))
            .values(used_at=agora)
            .execution_options(synchronize_session=False)
        )
        token = secrets.token_urlsafe(32)
        s.add(
            PasswordResetToken(
                profile_id=p.id,
                token_hash=_hash_token(token),
                expires_at=agora + timedelta(hours=PASSWORD_RESET_EXPIRE_HOURS),
                created_at=agora,
            )
        )
        enfileirar(
            s,
            NotificationType.PASSWORD_RESET,
            "Reposição de password",
            f"Use este código para definir uma nova password (válido {PASSWORD_RESET_EXPIRE_HOURS}h): {token}",
            recipient_id=p.id,
            recipient_email=p.email,
        )
        logger.info("Token de reposição emitido para %s", p.id)
        return token


def verificar_token_reposicao(token: str, agora: datetime | None = None) -> bool:
    agora = agora or datetime.utcnow()
    with db_session() as s:
        t = s.execute(
            select(PasswordResetToken).where(PasswordResetToken.token_hash == _hash_token(token))
        ).scalar_one_or_none()
        return bool(t and t.used_at is None and t.expires_at > agora)


def concluir_reposicao_password(token: str, nova_password: str, agora: datetime | None = None) -> None:
    """Define a nova password. O token é consumido no próprio UPDATE: um segundo uso falha."""
    if len(nova_password or "") < 8:
        raise PedidoInvalido("A nova password deve ter pelo menos 8 caracteres.")
    agora = agora or datetime.utcnow()
    h = _hash_token(token)
    with db_session() as s:
        res = s.execute(
            update(PasswordResetToken)
            .where(
                PasswordResetToken.token_hash == h,
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > agora,
            )
            .values(used_at=agora)
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            raise PedidoInvalido("Token de reposição inválido ou expirado.")
        t = s.execute(select(PasswordResetToken).where(PasswordResetToken.token_hash == h)).scalar_one()
        p = s.get(Profile, t.profile_id)
        if not p or not p.is_active:
            raise PedidoInvalido("Conta inativa.")
        p.password_hash = hash_password(nova_password)
        logger.info("Password reposta para %s", p.id)


def perfil_flat(p: Profile) -> dict:
    return {
        "id": p.id,
        "email": p.email,
        "name": p.name,
        "role": p.role.value,
        "company_id": p.company_id,
        "department": p.department,
        "job_title": p.job_title,
        "is_active": p.is_active,
    }
