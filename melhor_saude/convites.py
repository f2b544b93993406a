from __future__ import annotations

import csv
import io
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .auth_service import Ator, criar_perfil, email_valido, empresa_do_rh, exigir_papel, normalizar_email
from .config import DEFAULT_INVITE_SESSIONS, INVITE_CODE_PREFIX, INVITE_EXPIRE_DAYS
from .db import db_session
from .empresas import contar_colaboradores, verificar_lugares
from .errors import Conflito, ErroAplicacao, NaoEncontrado, PedidoInvalido, SemPermissao
from .models import (
    AllocationType,
    Booking,
    Company,
    Invite,
    InviteStatus,
    NotificationType,
    Papel,
    Profile,
    SessionUsage,
    UsageStatus,
)
from .notificacoes import enfileirar
from .sessoes import alocacao_ativa, definir_quota

logger = logging.getLogger(__name__)

# sem caracteres ambíguos (0/O, 1/I)
ALFABETO_CODIGO = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

COLUNAS_MODELO = ["Nome", "Email", "Departamento", "Cargo", "Sessões"]
COLUNAS_RESULTADOS = ["Email", "Estado", "Código", "Erro"]

# cabeçalho normalizado -> campo
CABECALHOS = {
    "nome": "name",
    "name": "name",
    "email": "email",
    "e-mail": "email",
    "departamento": "department",
    "department": "department",
    "cargo": "job_title",
    "job title": "job_title",
    "job_title": "job_title",
    "sessões": "sessions",
    "sessoes": "sessions",
    "sessions": "sessions",
}


# =========================
# Helper / DTO
# =========================
@dataclass(frozen=True)
class LinhaConvite:
    line: int
    name: str
    email: str
    department: str | None
    job_title: str | None
    sessions: int


@dataclass(frozen=True)
class ErroLinha:
    line: int
    field: str
    message: str
    email: str | None = None


@dataclass(frozen=True)
class ResultadoConvite:
    line: int
    email: str
    ok: bool
    invite_code: str | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "line": self.line,
            "email": self.email,
            "success": self.ok,
            "invite_code": self.invite_code,
            "error": self.error,
        }


def gerar_codigo_convite(existentes: set[str] | None = None, prefixo: str = INVITE_CODE_PREFIX) -> str:
    """Gera um código PREFIXO-XXXX que não está em `existentes`."""
    existentes = existentes or set()
    for _ in range(1000):
        codigo = f"{prefixo}-" + "".join(secrets.choice(ALFABETO_CODIGO) for _ in range(4))
        if codigo not in existentes:
            return codigo
    raise Conflito("Não foi possível gerar um código de convite único.")


def _codigo_unico(s: Session) -> str:
    tentados: set[str] = set()
    while True:
        codigo = gerar_codigo_convite(tentados)
        if not s.execute(select(Invite.id).where(Invite.invite_code == codigo)).first():
            return codigo
        tentados.add(codigo)


def convite_flat(inv: Invite) -> dict:
    meta = inv.invite_metadata or {}
    return {
        "id": inv.id,
        "company_id": inv.company_id,
        "email": inv.email,
        "invite_code": inv.invite_code,
        "role": inv.role.value,
        "status": inv.status.value,
        "name": meta.get("name"),
        "department": meta.get("department"),
        "job_title": meta.get("job_title"),
        "sessions_allocated": meta.get("sessions_allocated"),
        "invited_by": inv.invited_by,
        "expires_at": inv.expires_at.isoformat() if inv.expires_at else None,
        "accepted_at": inv.accepted_at.isoformat() if inv.accepted_at else None,
        "created_at": inv.created_at.isoformat(),
    }


def _empresa_gerivel(s: Session, ator: Ator, company_id: str) -> Company:
    exigir_papel(ator, Papel.ADMIN, Papel.HR)
    if ator.role == Papel.HR and empresa_do_rh(ator) != company_id:
        raise SemPermissao("Só pode gerir convites da sua empresa.")
    c = s.get(Company, company_id)
    if not c:
        raise NaoEncontrado("Empresa não encontrada.")
    return c


# =========================
# CSV
# =========================
def modelo_csv() -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(COLUNAS_MODELO)
    w.writerow(["Ana Silva", "ana.silva@exemplo.pt", "Recursos Humanos", "Técnica", DEFAULT_INVITE_SESSIONS])
    w.writerow(["João Santos", "joao.santos@exemplo.pt", "Comercial", "Gestor de Conta", DEFAULT_INVITE_SESSIONS])
    return buf.getvalue()


def descodificar_csv(dados: bytes) -> str:
    """UTF-8 (com ou sem BOM); exportações do Excel em Windows-1252 também são aceites."""
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return dados.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise PedidoInvalido("Não foi possível ler o ficheiro: guarde o CSV em UTF-8.")


def ler_csv_convites(texto: str, sessoes_padrao: int = DEFAULT_INVITE_SESSIONS) -> tuple[list[LinhaConvite], list[ErroLinha]]:
    """
    Lê o CSV de colaboradores (Nome,Email,Departamento,Cargo,Sessões).
    Devolve as linhas válidas e os erros por linha; linhas vazias são ignoradas.
    """
    texto = (texto or "").lstrip("\ufeff")
    reader = csv.DictReader(io.StringIO(texto))
    cabecalho = {CABECALHOS.get((h or "").strip().lower()) for h in (reader.fieldnames or [])}
    if "name" not in cabecalho or "email" not in cabecalho:
        return [], [ErroLinha(0, "file", "Cabeçalho inválido: são obrigatórias as colunas Nome e Email.")]

    linhas: list[LinhaConvite] = []
    erros: list[ErroLinha] = []
    vistos: set[str] = set()

    for n, raw in enumerate(reader, start=2):
        row = {}
        for k, v in raw.items():
            if k is None:
                continue
            campo = CABECALHOS.get(k.strip().lower())
            if campo:
                row[campo] = (v or "").strip()

        name, email = row.get("name", ""), normalizar_email(row.get("email", ""))
        if not name and not email:
            continue
        if not name or not email:
            erros.append(ErroLinha(n, "name" if not name else "email", "Campo obrigatório em falta.", email or None))
            continue
        if len(name) > 100:
            erros.append(ErroLinha(n, "name", "Nome demasiado longo (máx. 100).", email))
            continue
        if len(email) > 255 or not email_valido(email):
            erros.append(ErroLinha(n, "email", "Email inválido.", email))
            continue
        if email in vistos:
            erros.append(ErroLinha(n, "email", "Email duplicado no ficheiro.", email))
            continue

        sessoes = sessoes_padrao
        if row.get("sessions"):
            try:
                sessoes = int(row["sessions"])
            except ValueError:
                sessoes = -1
            if sessoes < 0:
                erros.append(ErroLinha(n, "sessions", "Número de sessões inválido.", email))
                continue

        vistos.add(email)
        linhas.append(
            LinhaConvite(
                line=n,
                name=name,
                email=email,
                department=row.get("department") or None,
                job_title=row.get("job_title") or None,
                sessions=sessoes,
            )
        )

    return linhas, erros


def exportar_resultados_csv(resultados: list[ResultadoConvite]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(COLUNAS_RESULTADOS)
    for r in resultados:
        w.writerow([r.email, "Sucesso" if r.ok else "Erro", r.invite_code or "", r.error or ""])
    return buf.getvalue()


# =========================
# Convites
# =========================
def criar_convite_em(
    s: Session,
    company: Company,
    email: str,
    invited_by: str | None,
    name: str | None = None,
    department: str | None = None,
    job_title: str | None = None,
    sessions: int | None = None,
    role: Papel = Papel.USER,
    agora: datetime | None = None,
) -> Invite:
    agora = agora or datetime.utcnow()
    email = normalizar_email(email)
    if not email_valido(email):
        raise PedidoInvalido("Email inválido.")
    if role not in (Papel.USER, Papel.HR):
        raise PedidoInvalido("Os convites só podem ser para colaboradores ou RH.")
    if not company.is_active:
        raise PedidoInvalido("A empresa está inativa.")
    sessions = DEFAULT_INVITE_SESSIONS if sessions is None else sessions
    if sessions < 0:
        raise PedidoInvalido("Número de sessões inválido.")

    membro = s.execute(
        select(Profile.id).where(Profile.email == email, Profile.company_id == company.id)
    ).first()
    if membro:
        raise Conflito("Este email já pertence a um colaborador da empresa.")
    pendente = s.execute(
        select(Invite.id).where(
            Invite.email == email,
            Invite.company_id == company.id,
            Invite.status == InviteStatus.PENDING,
        )
    ).first()
    if pendente:
        raise Conflito("Já existe um convite pendente para este email.")

    inv = Invite(
        company_id=company.id,
        email=email,
        invite_code=_codigo_unico(s),
        role=role,
        status=InviteStatus.PENDING,
        invite_metadata={
            "name": name,
            "department": department,
            "job_title": job_title,
            "sessions_allocated": sessions,
        },
        invited_by=invited_by,
        expires_at=agora + timedelta(days=INVITE_EXPIRE_DAYS),
    )
    s.add(inv)
    s.flush()

    enfileirar(
        s,
        NotificationType.INVITE,
        f"Convite para a Melhor Saúde ({company.name})",
        f"Olá {name or ''}, foi convidado(a) pela {company.name}. "
        f"Use o código {inv.invite_code} para ativar a sua conta até {inv.expires_at.strftime('%d/%m/%Y')}.",
        recipient_email=email,
    )
    return inv


def criar_convite(
    ator: Ator,
    company_id: str,
    email: str,
    name: str | None = None,
    department: str | None = None,
    job_title: str | None = None,
    sessions: int | None = None,
    role: Papel = Papel.USER,
) -> dict:
    with db_session() as s:
        c = _empresa_gerivel(s, ator, company_id)
        inv = criar_convite_em(s, c, email, ator.id, name, department, job_title, sessions, role)
        logger.info("Convite %s criado para %s (%s)", inv.invite_code, inv.email, c.name)
        return convite_flat(inv)


def convidar_em_lote(
    ator: Ator,
    company_id: str,
    texto_csv: str,
    sessoes_padrao: int = DEFAULT_INVITE_SESSIONS,
) -> list[ResultadoConvite]:
    """
    Um convite por linha, cada um na sua transação: uma linha com erro
    não impede as restantes.
    """
    with db_session() as s:
        _empresa_gerivel(s, ator, company_id)

    linhas, erros = ler_csv_convites(texto_csv, sessoes_padrao)
    resultados = [ResultadoConvite(e.line, e.email or "", False, error=e.message) for e in erros]

    for linha in linhas:
        try:
            with db_session() as s:
                c = s.get(Company, company_id)
                inv = criar_convite_em(
                    s, c, linha.email, ator.id, linha.name, linha.department, linha.job_title, linha.sessions
                )
                codigo = inv.invite_code
        except ErroAplicacao as e:
            resultados.append(ResultadoConvite(linha.line, linha.email, False, error=e.message))
        else:
            resultados.append(ResultadoConvite(linha.line, linha.email, True, invite_code=codigo))

    resultados.sort(key=lambda r: r.line)
    ok = sum(1 for r in resultados if r.ok)
    logger.info("Convites em lote para %s: %d sucesso, %d erro", company_id, ok, len(resultados) - ok)
    return resultados


def _convite_por_codigo(s: Session, code: str) -> Invite:
    inv = s.execute(select(Invite).where(Invite.invite_code == (code or "").strip().upper())).scalar_one_or_none()
    if not inv:
        raise NaoEncontrado("Código de convite não encontrado.")
    return inv


def _marcar_se_expirado(code: str, agora: datetime) -> bool:
    """Marca o convite como expirado (transação própria, para persistir mesmo com o erro que se segue)."""
    with db_session() as s:
        inv = _convite_por_codigo(s, code)
        if inv.status == InviteStatus.PENDING and inv.expires_at is not None and inv.expires_at < agora:
            inv.status = InviteStatus.EXPIRED
            return True
        return False


def resgatar_convite_em(s: Session, profile: Profile, code: str, agora: datetime | None = None) -> Invite:
    agora = agora or datetime.utcnow()
    inv = _convite_por_codigo(s, code)
    if inv.status != InviteStatus.PENDING:
        raise PedidoInvalido(f"O convite está {inv.status.value}.")
    if inv.expires_at is not None and inv.expires_at < agora:
        raise PedidoInvalido("O convite expirou.")
    if profile.company_id == inv.company_id:
        raise PedidoInvalido("O utilizador já pertence a esta empresa.")
    if profile.company_id is not None:
        raise Conflito("O utilizador já pertence a outra empresa.")
    if profile.role not in (Papel.USER, Papel.HR):
        raise PedidoInvalido("Esta conta não pode aderir a uma empresa.")

    company = inv.company
    if not company.is_active:
        raise PedidoInvalido("A empresa está inativa.")
    if inv.role == Papel.USER:
        verificar_lugares(s, company)

    meta = inv.invite_metadata or {}
    profile.company_id = company.id
    profile.role = inv.role
    profile.department = profile.department or meta.get("department")
    profile.job_title = profile.job_title or meta.get("job_title")
    s.flush()

    sessoes = meta.get("sessions_allocated")
    sessoes = DEFAULT_INVITE_SESSIONS if sessoes is None else int(sessoes)
    if sessoes > 0:
        anterior = alocacao_ativa(s, profile.id, AllocationType.COMPANY)
        total = (anterior.sessions_allocated if anterior else 0) + sessoes
        definir_quota(s, profile, AllocationType.COMPANY, total, inv.invited_by, reason=f"Convite {inv.invite_code}")

    inv.status = InviteStatus.ACCEPTED
    inv.accepted_at = agora

    enfileirar(
        s,
        NotificationType.WELCOME,
        "Bem-vindo à Melhor Saúde",
        f"A sua conta está ligada à {company.name}. Tem {sessoes} sessões disponíveis.",
        recipient_id=profile.id,
    )
    logger.info("Convite %s resgatado por %s", inv.invite_code, profile.email)
    return inv


def _resultado_resgate(inv: Invite, profile: Profile) -> dict:
    return {
        "profile_id": profile.id,
        "company_id": inv.company_id,
        "company_name": inv.company.name,
        "role": profile.role.value,
        "sessions_allocated": (inv.invite_metadata or {}).get("sessions_allocated"),
    }


def resgatar_convite(ator: Ator, code: str, agora: datetime | None = None) -> dict:
    agora = agora or datetime.utcnow()
    if not (code or "").strip():
        raise PedidoInvalido("O código do convite é obrigatório.")
    if _marcar_se_expirado(code, agora):
        raise PedidoInvalido("O convite expirou.")
    with db_session() as s:
        profile = s.get(Profile, ator.id)
        if not profile:
            raise NaoEncontrado("Utilizador não encontrado.")
        inv = resgatar_convite_em(s, profile, code, agora)
        return _resultado_resgate(inv, profile)


def registar_com_convite(
    code: str,
    password: str,
    name: str | None = None,
    email: str | None = None,
    agora: datetime | None = None,
) -> dict:
    """Registo público: cria o perfil e resgata o convite na mesma transação."""
    agora = agora or datetime.utcnow()
    if not (code or "").strip():
        raise PedidoInvalido("O código do convite é obrigatório.")
    if len(password or "") < 8:
        raise PedidoInvalido("A password deve ter pelo menos 8 caracteres.")
    if _marcar_se_expirado(code, agora):
        raise PedidoInvalido("O convite expirou.")
    with db_session() as s:
        inv = _convite_por_codigo(s, code)
        meta = inv.invite_metadata or {}
        profile = criar_perfil(
            s,
            email or inv.email,
            password,
            name or meta.get("name") or "",
            Papel.USER,
            department=meta.get("department"),
            job_title=meta.get("job_title"),
        )
        inv = resgatar_convite_em(s, profile, code, agora)
        return _resultado_resgate(inv, profile)


def cancelar_convite(ator: Ator, invite_id: str) -> dict:
    with db_session() as s:
        inv = s.get(Invite, invite_id)
        if not inv:
            raise NaoEncontrado("Convite não encontrado.")
        _empresa_gerivel(s, ator, inv.company_id)
        if inv.status != InviteStatus.PENDING:
            raise PedidoInvalido(f"Só convites pendentes podem ser cancelados (estado: {inv.status.value}).")
        inv.status = InviteStatus.CANCELLED
        return convite_flat(inv)


def expirar_convites(agora: datetime | None = None) -> int:
    agora = agora or datetime.utcnow()
    with db_session() as s:
        res = s.execute(
            update(Invite)
            .where(
                Invite.status == InviteStatus.PENDING,
                Invite.expires_at.is_not(None),
                Invite.expires_at < agora,
            )
            .values(status=InviteStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        total = res.rowcount or 0
        logger.info("Convites expirados: %d", total)
        return total


def listar_convites(ator: Ator, company_id: str, status: InviteStatus | None = None) -> list[dict]:
    with db_session() as s:
        _empresa_gerivel(s, ator, company_id)
        q = select(Invite).where(Invite.company_id == company_id).order_by(Invite.created_at.desc())
        if status is not None:
            q = q.where(Invite.status == status)
        return [convite_flat(i) for i in s.scalars(q)]


# =========================
# Adoção (RH)
# =========================
def adocao_empresa(company_id: str) -> dict:
    """Taxa de aceitação dos convites e utilização efetiva da plataforma."""
    with db_session() as s:
        c = s.get(Company, company_id)
        if not c:
            raise NaoEncontrado("Empresa não encontrada.")

        por_estado = dict(
            s.execute(
                select(Invite.status, func.count(Invite.id)).where(Invite.company_id == c.id).group_by(Invite.status)
            ).all()
        )
        convites = {st.value: por_estado.get(st, 0) for st in InviteStatus}
        total_convites = sum(convites.values())

        colaboradores = contar_colaboradores(s, c.id)
        com_marcacoes = s.execute(
            select(func.count(func.distinct(Booking.user_id))).where(Booking.company_id == c.id)
        ).scalar_one()
        com_sessoes = s.execute(
            select(func.count(func.distinct(SessionUsage.profile_id)))
            .join(Profile, Profile.id == SessionUsage.profile_id)
            .where(Profile.company_id == c.id, SessionUsage.status == UsageStatus.USED)
        ).scalar_one()

        def pct(a: int, b: int) -> int:
            return round(a / b * 100) if b else 0

        return {
            "company_id": c.id,
            "company_name": c.name,
            "invites": convites,
            "invites_total": total_convites,
            "acceptance_rate": pct(convites[InviteStatus.ACCEPTED.value], total_convites),
            "employees": colaboradores,
            "employees_with_bookings": com_marcacoes,
            "employees_with_sessions": com_sessoes,
            "adoption_rate": pct(com_marcacoes, colaboradores),
        }
