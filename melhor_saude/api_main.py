from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from typing import Any, Callable

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from . import administracao, avaliacao, convites, disponibilidade, empresas, marcacoes, relatorios, sessoes
from .auth_security import create_access_token, get_subject
from .auth_service import (
    Ator,
    alterar_password,
    ator_de,
    autenticar,
    concluir_reposicao_password,
    empresa_do_rh,
    exigir_papel,
    obter_perfil,
    pedir_reposicao_password,
    perfil_flat,
    verificar_token_reposicao,
)
from .config import DEFAULT_INVITE_SESSIONS, LOG_DIR, LOG_LEVEL, is_development
from .db import init_db
from .errors import ErroAplicacao, NaoAutenticado, SemPermissao
from .logging_config import setup_logging
from .models import (
    AllocationType,
    BookingStatus,
    BreakType,
    CaseStatus,
    ChangeRequestStatus,
    InviteStatus,
    LeaveType,
    Papel,
    Pilar,
    PlanType,
    SessionRequestStatus,
    SessionType,
)
from .notificacoes import notificacoes_pendentes_flat
from .seed import seed_base

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL, LOG_DIR)
    init_db()
    if is_development():
        seed_base()
    yield


app = FastAPI(title="Melhor Saúde API", version="1.0.0", lifespan=lifespan)



# Erros

@app.exception_handler(ErroAplicacao)
async def erro_aplicacao_handler(request: Request, exc: ErroAplicacao) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def validacao_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Dados inválidos.", "code": "VALIDATION_ERROR", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def erro_inesperado_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Erro inesperado em %s %s", request.method, request.url.path)
    message = str(exc) if is_development() else "Erro interno do servidor."
    return JSONResponse(status_code=500, content={"error": message, "code": "INTERNAL_ERROR"})



# Schemas Auth

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict[str, Any]


class PasswordIn(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class RegistoConviteIn(BaseModel):
    invite_code: str
    password: str = Field(..., min_length=8)
    name: str | None = None
    email: str | None = None


class ResgateIn(BaseModel):
    invite_code: str


class PedidoReposicaoIn(BaseModel):
    email: str


class TokenReposicaoIn(BaseModel):
    token: str


class ReposicaoIn(BaseModel):
    token: str
    new_password: str = Field(..., min_length=8)



# Schemas Domínio

class EmpresaIn(BaseModel):
    name: str = Field(..., min_length=1)
    contact_email: str
    contact_phone: str | None = None
    plan_type: PlanType = PlanType.BASIC
    sessions_allocated: int = Field(0, ge=0)
    seat_limit: int | None = Field(None, ge=1)
    notes: str | None = None


class EmpresaPatchIn(BaseModel):
    name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    plan_type: PlanType | None = None
    notes: str | None = None


class EstadoIn(BaseModel):
    is_active: bool


class QuotaEmpresaIn(BaseModel):
    sessions_allocated: int | None = Field(None, ge=0)
    seat_limit: int | None = Field(None, ge=1)


class UtilizadorIn(BaseModel):
    email: str
    name: str = Field(..., min_length=1)
    role: Papel = Papel.USER
    company_id: str | None = None
    department: str | None = None
    job_title: str | None = None


class PrestadorIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: str
    pillar: Pilar
    specialties: list[str] = []
    license_number: str | None = None
    bio: str | None = None
    is_approved: bool = True


class EstadoPrestadorIn(BaseModel):
    is_active: bool | None = None
    is_approved: bool | None = None


class HorarioIn(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time
    is_available: bool = True


class PausaIn(BaseModel):
    start_time: time
    end_time: time
    break_date: date | None = None
    day_of_week: int | None = Field(None, ge=0, le=6)
    break_type: BreakType = BreakType.OTHER
    description: str | None = None


class AusenciaIn(BaseModel):
    start_date: date
    end_date: date
    leave_type: LeaveType = LeaveType.VACATION
    reason: str | None = None


class AtribuicaoIn(BaseModel):
    profile_id: str
    allocation_type: AllocationType = AllocationType.COMPANY
    quantity: int = Field(..., ge=1)
    reason: str | None = None
    expires_at: datetime | None = None


class AjusteQuotaIn(BaseModel):
    profile_id: str
    allocation_type: AllocationType
    total: int = Field(..., ge=0)
    reason: str | None = None


class UsoSessaoIn(BaseModel):
    profile_id: str | None = None
    allocation_type: AllocationType | None = None
    session_type: SessionType = SessionType.INDIVIDUAL
    notes: str | None = None


class MarcacaoIn(BaseModel):
    prestador_id: str
    booking_date: datetime
    duration: int = Field(60, ge=15, le=240)
    session_type: SessionType = SessionType.INDIVIDUAL
    notes: str | None = None
    user_id: str | None = None


class EstadoMarcacaoIn(BaseModel):
    status: BookingStatus
    notes: str | None = None
    reason: str | None = None


class NotasIn(BaseModel):
    notes: str | None = None


class CancelamentoIn(BaseModel):
    reason: str | None = None


class ReagendamentoIn(BaseModel):
    new_date: datetime
    reason: str | None = None


class FeedbackIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = None


class ConviteIn(BaseModel):
    email: str
    name: str | None = None
    department: str | None = None
    job_title: str | None = None
    sessions: int | None = Field(None, ge=0)
    role: Papel = Papel.USER


class AvaliacaoIn(BaseModel):
    pillar: Pilar
    topic: str
    symptoms: list[str] = []
    context: str | None = None


class ChatIn(BaseModel):
    assessment_id: str | None = None
    pillar: Pilar | None = None


class MensagemIn(BaseModel):
    content: str = Field(..., min_length=1)


class FimChatIn(BaseModel):
    resolved: bool = True
    rating: int | None = Field(None, ge=1, le=5)


class PedidoSessaoIn(BaseModel):
    assessment_id: str | None = None
    chat_session_id: str | None = None
    notes: str | None = None
    pillar: Pilar | None = None


class AtribuirPedidoIn(BaseModel):
    prestador_id: str
    booking_date: datetime
    duration: int = Field(60, ge=15, le=240)


class PedidoAlteracaoIn(BaseModel):
    field_name: str
    new_value: str
    reason: str | None = None


class DecisaoIn(BaseModel):
    approve: bool
    admin_notes: str | None = None


class CasoIn(BaseModel):
    user_id: str
    title: str = Field(..., min_length=1)
    notes: str | None = None


class CasoPatchIn(BaseModel):
    status: CaseStatus | None = None
    notes: str | None = None



# Dependências auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> Ator:
    # tokens colados com espaços / aspas
    token = token.strip().strip('"').strip("'")

    profile_id = get_subject(token)
    if not profile_id:
        raise NaoAutenticado("Token inválido ou expirado.")

    p = obter_perfil(profile_id)
    if not p or not p.is_active:
        raise NaoAutenticado("Utilizador inválido ou inativo.")
    return ator_de(p)


def requer_papel(*papeis: Papel) -> Callable[..., Ator]:
    def dependencia(ator: Ator = Depends(get_current_user)) -> Ator:
        exigir_papel(ator, *papeis)
        return ator

    return dependencia


apenas_admin = requer_papel(Papel.ADMIN)
admin_ou_rh = requer_papel(Papel.ADMIN, Papel.HR)


def _exigir_empresa(ator: Ator, company_id: str | None) -> None:
    """RH só vê a própria empresa."""
    if ator.role == Papel.HR and company_id != empresa_do_rh(ator):
        raise SemPermissao("Sem acesso a esta empresa.")


def _exigir_perfil_visivel(ator: Ator, profile_id: str) -> None:
    if ator.is_admin or profile_id == ator.id:
        return
    if ator.role == Papel.HR:
        p = obter_perfil(profile_id)
        if p and p.company_id == empresa_do_rh(ator):
            return
    raise SemPermissao("Sem acesso a este utilizador.")


def _token_para(user: dict) -> TokenOut:
    token = create_access_token(subject=user["id"], extra={"role": user["role"], "email": user["email"]})
    return TokenOut(access_token=token, user=user)



# AUTH endpoints (públicos)

@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    p = autenticar(form.username, form.password)
    if not p:
        raise NaoAutenticado("Credenciais inválidas.")
    return _token_para(perfil_flat(p))


@app.post("/api/auth/register-invite", response_model=TokenOut)
def register_invite(payload: RegistoConviteIn) -> TokenOut:
    res = convites.registar_com_convite(payload.invite_code, payload.password, name=payload.name, email=payload.email)
    return _token_para(perfil_flat(obter_perfil(res["profile_id"])))


@app.post("/api/auth/password-reset/request")
def password_reset_request(payload: PedidoReposicaoIn) -> dict[str, Any]:
    # a resposta é a mesma exista ou não o email
    pedir_reposicao_password(payload.email)
    return {"ok": True, "message": "Se o email estiver registado, receberá instruções para repor a password."}


@app.post("/api/auth/password-reset/verify")
def password_reset_verify(payload: TokenReposicaoIn) -> dict[str, Any]:
    return {"valid": verificar_token_reposicao(payload.token)}


@app.post("/api/auth/password-reset/complete")
def password_reset_complete(payload: ReposicaoIn) -> dict[str, Any]:
    concluir_reposicao_password(payload.token, payload.new_password)
    return {"ok": True}


@app.get("/api/pillars")
def api_pillars() -> list[dict]:
    return avaliacao.catalogo()


@app.get("/api/health")
def health() -> dict[str, Any]:
    return {"ok": True}



# Perfil próprio

@app.get("/api/me")
def me(ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    out = perfil_flat(obter_perfil(ator.id))
    if ator.role == Papel.PRESTADOR:
        out["prestador"] = empresas.prestador_do_perfil(ator.id)
    return out


@app.post("/api/me/password")
def change_password(payload: PasswordIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    if not alterar_password(ator.id, payload.current_password, payload.new_password):
        raise NaoAutenticado("Password atual incorreta.")
    return {"ok": True}


@app.get("/api/me/sessions")
def my_sessions(ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return sessoes.saldo_sessoes(ator.id)


@app.get("/api/me/sessions/history")
def my_session_history(limit: int = 100, ator: Ator = Depends(get_current_user)) -> list[dict]:
    return sessoes.historico_sessoes(ator.id, limit=limit)


@app.post("/api/invites/redeem")
def redeem_invite(payload: ResgateIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return convites.resgatar_convite(ator, payload.invite_code)



# Empresas

@app.post("/api/companies")
def create_company(payload: EmpresaIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    cid = empresas.criar_empresa(ator, **payload.model_dump())
    return empresas.obter_empresa(cid)


@app.get("/api/companies")
def list_companies(
    with_users: bool = False,
    only_active: bool = False,
    ator: Ator = Depends(apenas_admin),
) -> list[dict]:
    return empresas.listar_empresas(com_utilizadores=with_users, apenas_ativas=only_active)


@app.get("/api/companies/{company_id}")
def get_company(company_id: str, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    _exigir_empresa(ator, company_id)
    return empresas.obter_empresa(company_id)


@app.patch("/api/companies/{company_id}")
def update_company(company_id: str, payload: EmpresaPatchIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return empresas.atualizar_empresa(ator, company_id, **payload.model_dump(exclude_unset=True))


@app.post("/api/companies/{company_id}/status")
def toggle_company(company_id: str, payload: EstadoIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return empresas.alterar_estado_empresa(ator, company_id, payload.is_active)


@app.put("/api/companies/{company_id}/quota")
def company_quota(company_id: str, payload: QuotaEmpresaIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return empresas.atualizar_quota_empresa(ator, company_id, payload.sessions_allocated, payload.seat_limit)


@app.get("/api/companies/{company_id}/summary")
def company_summary(company_id: str, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    _exigir_empresa(ator, company_id)
    return empresas.resumo_empresa(company_id)


@app.get("/api/companies/{company_id}/adoption")
def company_adoption(company_id: str, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    _exigir_empresa(ator, company_id)
    return convites.adocao_empresa(company_id)



# Utilizadores

@app.post("/api/users")
def create_user(payload: UtilizadorIn, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    return empresas.criar_utilizador_empresa(ator, **payload.model_dump())


@app.get("/api/users")
def list_users(
    company_id: str | None = None,
    role: Papel | None = None,
    ator: Ator = Depends(admin_ou_rh),
) -> list[dict]:
    if ator.role == Papel.HR:
        company_id = empresa_do_rh(ator)
    return empresas.listar_utilizadores(company_id=company_id, role=role)


@app.post("/api/users/{profile_id}/status")
def toggle_user(profile_id: str, payload: EstadoIn, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    return empresas.alterar_estado_utilizador(ator, profile_id, payload.is_active)


@app.get("/api/users/{profile_id}/allocations")
def user_allocations(profile_id: str, include_inactive: bool = True, ator: Ator = Depends(get_current_user)) -> list[dict]:
    _exigir_perfil_visivel(ator, profile_id)
    return sessoes.listar_alocacoes(profile_id, incluir_inativas=include_inactive)


@app.get("/api/users/{profile_id}/sessions")
def user_balance(profile_id: str, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    _exigir_perfil_visivel(ator, profile_id)
    return sessoes.saldo_sessoes(profile_id)


@app.get("/api/users/{profile_id}/sessions/history")
def user_history(profile_id: str, limit: int = 100, ator: Ator = Depends(get_current_user)) -> list[dict]:
    _exigir_perfil_visivel(ator, profile_id)
    return sessoes.historico_sessoes(profile_id, limit=limit)



# Prestadores

@app.post("/api/prestadores")
def create_prestador(payload: PrestadorIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return empresas.criar_prestador(ator, **payload.model_dump())


@app.get("/api/prestadores")
def list_prestadores(
    pillar: Pilar | None = None,
    only_available: bool = True,
    ator: Ator = Depends(get_current_user),
) -> list[dict]:
    # só o admin vê prestadores inativos / por aprovar
    return empresas.listar_prestadores(pillar=pillar, apenas_disponiveis=only_available or not ator.is_admin)


@app.get("/api/prestadores/{prestador_id}")
def get_prestador(prestador_id: str, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return empresas.obter_prestador(prestador_id)


@app.post("/api/prestadores/{prestador_id}/status")
def toggle_prestador(prestador_id: str, payload: EstadoPrestadorIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return empresas.alterar_estado_prestador(ator, prestador_id, payload.is_active, payload.is_approved)


@app.get("/api/prestadores/{prestador_id}/availability")
def prestador_availability(
    prestador_id: str,
    day: date = Query(...),
    duration: int = Query(60, ge=15, le=240),
    ator: Ator = Depends(get_current_user),
) -> dict[str, Any]:
    return {"day": day.isoformat(), "slots": marcacoes.horarios_disponiveis(prestador_id, day, duration)}


@app.get("/api/prestadores/{prestador_id}/schedule")
def prestador_schedule(prestador_id: str, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return disponibilidade.obter_disponibilidade(prestador_id)


@app.post("/api/prestadores/{prestador_id}/schedule")
def add_schedule(
    prestador_id: str,
    payload: HorarioIn,
    ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR)),
) -> dict[str, Any]:
    return disponibilidade.definir_horario(ator, prestador_id, **payload.model_dump())


@app.delete("/api/prestadores/schedule/{availability_id}")
def delete_schedule(availability_id: str, ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR))) -> dict[str, Any]:
    disponibilidade.remover_horario(ator, availability_id)
    return {"ok": True}


@app.post("/api/prestadores/{prestador_id}/breaks")
def add_break(
    prestador_id: str,
    payload: PausaIn,
    ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR)),
) -> dict[str, Any]:
    return disponibilidade.adicionar_pausa(ator, prestador_id, **payload.model_dump())


@app.delete("/api/prestadores/breaks/{break_id}")
def delete_break(break_id: str, ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR))) -> dict[str, Any]:
    disponibilidade.remover_pausa(ator, break_id)
    return {"ok": True}


@app.post("/api/prestadores/{prestador_id}/leave")
def add_leave(
    prestador_id: str,
    payload: AusenciaIn,
    ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR)),
) -> dict[str, Any]:
    return disponibilidade.registar_ausencia(ator, prestador_id, **payload.model_dump())


@app.delete("/api/prestadores/leave/{leave_id}")
def delete_leave(leave_id: str, ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR))) -> dict[str, Any]:
    disponibilidade.remover_ausencia(ator, leave_id)
    return {"ok": True}


@app.get("/api/prestadores/{prestador_id}/agenda")
def prestador_agenda(
    prestador_id: str,
    day: date = Query(...),
    ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR)),
) -> list[dict]:
    if ator.role == Papel.PRESTADOR:
        proprio = empresas.prestador_do_perfil(ator.id)
        if not proprio or proprio["id"] != prestador_id:
            raise SemPermissao("Só pode consultar a sua agenda.")
    return marcacoes.agenda_prestador(prestador_id, day)


@app.get("/api/prestadores/{prestador_id}/rating")
def prestador_rating(prestador_id: str, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return administracao.media_avaliacoes_prestador(prestador_id)



# Sessões

@app.post("/api/sessions/allocate")
def allocate_sessions(payload: AtribuicaoIn, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    return sessoes.atribuir_sessoes(
        ator, payload.profile_id, payload.allocation_type, payload.quantity,
        reason=payload.reason, expires_at=payload.expires_at,
    )


@app.put("/api/sessions/quota")
def adjust_quota(payload: AjusteQuotaIn, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    return sessoes.ajustar_quota_utilizador(ator, payload.profile_id, payload.allocation_type, payload.total, payload.reason)


@app.post("/api/sessions/use")
def use_session(payload: UsoSessaoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return sessoes.usar_sessao_avulsa(ator, **payload.model_dump())



# Marcações

@app.post("/api/bookings")
def create_booking(payload: MarcacaoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return marcacoes.criar_marcacao(ator, **payload.model_dump())


@app.get("/api/bookings")
def list_bookings(
    status: BookingStatus | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    ator: Ator = Depends(get_current_user),
) -> list[dict]:
    return marcacoes.listar_marcacoes(ator, status=status, desde=since, ate=until)


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return marcacoes.obter_marcacao(ator, booking_id)


@app.patch("/api/bookings/{booking_id}/status")
def booking_status(booking_id: str, payload: EstadoMarcacaoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    res = marcacoes.atualizar_estado_marcacao(ator, booking_id, payload.status, payload.notes, payload.reason)
    return res.as_dict()


@app.post("/api/bookings/{booking_id}/complete")
def complete_booking(booking_id: str, payload: NotasIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return marcacoes.concluir_sessao(ator, booking_id, payload.notes).as_dict()


@app.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, payload: CancelamentoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return marcacoes.cancelar_marcacao(ator, booking_id, payload.reason or "").as_dict()


@app.post("/api/bookings/{booking_id}/cancel-refund")
def cancel_refund_booking(booking_id: str, payload: CancelamentoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return marcacoes.cancelar_com_reembolso(ator, booking_id, payload.reason).as_dict()


@app.post("/api/bookings/{booking_id}/reschedule")
def reschedule_booking(booking_id: str, payload: ReagendamentoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return marcacoes.reagendar_marcacao(ator, booking_id, payload.new_date, payload.reason)


@app.post("/api/bookings/{booking_id}/feedback")
def booking_feedback(booking_id: str, payload: FeedbackIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    fid = marcacoes.registar_feedback(ator, booking_id, payload.rating, payload.comment)
    return {"ok": True, "feedback_id": fid}



# Convites (RH)

@app.get("/api/invites/template", response_class=PlainTextResponse)
def invite_template(ator: Ator = Depends(admin_ou_rh)) -> PlainTextResponse:
    return PlainTextResponse(
        convites.modelo_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="modelo_convites.csv"'},
    )


@app.post("/api/companies/{company_id}/invites")
def create_invite(company_id: str, payload: ConviteIn, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    return convites.criar_convite(ator, company_id, **payload.model_dump())


@app.post("/api/companies/{company_id}/invites/bulk")
async def bulk_invites(
    company_id: str,
    file: UploadFile = File(...),
    default_sessions: int = Form(DEFAULT_INVITE_SESSIONS),
    ator: Ator = Depends(admin_ou_rh),
) -> dict[str, Any]:
    texto = convites.descodificar_csv(await file.read())
    resultados = convites.convidar_em_lote(ator, company_id, texto, sessoes_padrao=default_sessions)
    return {
        "created": sum(1 for r in resultados if r.ok),
        "failed": sum(1 for r in resultados if not r.ok),
        "results": [r.as_dict() for r in resultados],
        "csv": convites.exportar_resultados_csv(resultados),
    }


@app.get("/api/companies/{company_id}/invites")
def list_invites(
    company_id: str,
    status: InviteStatus | None = None,
    ator: Ator = Depends(admin_ou_rh),
) -> list[dict]:
    return convites.listar_convites(ator, company_id, status)


@app.post("/api/invites/{invite_id}/cancel")
def cancel_invite(invite_id: str, ator: Ator = Depends(admin_ou_rh)) -> dict[str, Any]:
    return convites.cancelar_convite(ator, invite_id)


@app.post("/api/invites/expire")
def expire_invites(ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return {"expired": convites.expirar_convites()}



# Relatórios

@app.get("/api/reports/monthly")
def monthly_report(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    company_id: str | None = None,
    format: str = Query("json", pattern="^(json|csv|html)$"),
    ator: Ator = Depends(admin_ou_rh),
):
    if ator.role == Papel.HR:
        company_id = empresa_do_rh(ator)
    rel = relatorios.relatorio_mensal(year, month, company_id=company_id)
    if format == "csv":
        nome = f"relatorio_{year}_{month:02d}.csv"
        return PlainTextResponse(
            relatorios.exportar_relatorio_csv(rel),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{nome}"'},
        )
    if format == "html":
        return HTMLResponse(relatorios.exportar_relatorio_html(rel))
    return rel


@app.get("/api/admin/overview")
def admin_overview(ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return relatorios.visao_geral_plataforma()



# Avaliação e chat

@app.post("/api/assessments")
def start_assessment(payload: AvaliacaoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return avaliacao.iniciar_avaliacao(ator, payload.pillar, payload.topic, payload.symptoms, payload.context)


@app.post("/api/chat/sessions")
def start_chat(payload: ChatIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return avaliacao.iniciar_chat(ator, payload.assessment_id, payload.pillar)


@app.post("/api/chat/sessions/{session_id}/messages")
def send_message(session_id: str, payload: MensagemIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return avaliacao.enviar_mensagem(ator, session_id, payload.content)


@app.get("/api/chat/sessions/{session_id}/messages")
def chat_history(session_id: str, ator: Ator = Depends(get_current_user)) -> list[dict]:
    return avaliacao.historico_chat(ator, session_id)


@app.post("/api/chat/sessions/{session_id}/end")
def end_chat(session_id: str, payload: FimChatIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return avaliacao.terminar_chat(ator, session_id, payload.resolved, payload.rating)


@app.post("/api/session-requests")
def request_session(payload: PedidoSessaoIn, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return avaliacao.pedir_sessao_humana(ator, **payload.model_dump())


@app.get("/api/session-requests")
def list_session_requests(
    status: SessionRequestStatus | None = SessionRequestStatus.PENDING,
    pillar: Pilar | None = None,
    ator: Ator = Depends(apenas_admin),
) -> list[dict]:
    return avaliacao.listar_pedidos_sessao(status=status, pillar=pillar)


@app.post("/api/session-requests/{request_id}/assign")
def assign_session_request(request_id: str, payload: AtribuirPedidoIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return avaliacao.atribuir_pedido_sessao(ator, request_id, payload.prestador_id, payload.booking_date, payload.duration)


@app.post("/api/session-requests/{request_id}/cancel")
def cancel_session_request(request_id: str, ator: Ator = Depends(get_current_user)) -> dict[str, Any]:
    return avaliacao.cancelar_pedido_sessao(ator, request_id)



# Administração

@app.post("/api/change-requests")
def create_change_request(
    payload: PedidoAlteracaoIn,
    ator: Ator = Depends(requer_papel(Papel.PRESTADOR)),
) -> dict[str, Any]:
    rid = administracao.pedir_alteracao(ator, payload.field_name, payload.new_value, payload.reason)
    return {"ok": True, "request_id": rid}


@app.get("/api/change-requests")
def list_change_requests(
    status: ChangeRequestStatus | None = ChangeRequestStatus.PENDING,
    ator: Ator = Depends(apenas_admin),
) -> list[dict]:
    return administracao.listar_pedidos_alteracao(status)


@app.post("/api/change-requests/{request_id}/decision")
def decide_change_request(request_id: int, payload: DecisaoIn, ator: Ator = Depends(apenas_admin)) -> dict[str, Any]:
    return administracao.decidir_alteracao(ator, request_id, payload.approve, payload.admin_notes)


@app.get("/api/admin/logs")
def admin_logs(action_type: str | None = None, limit: int = 100, ator: Ator = Depends(apenas_admin)) -> list[dict]:
    return administracao.listar_logs(action_type, limit)


@app.post("/api/cases")
def open_case(payload: CasoIn, ator: Ator = Depends(requer_papel(Papel.PRESTADOR))) -> dict[str, Any]:
    cid = administracao.abrir_caso(ator, payload.user_id, payload.title, payload.notes)
    return {"ok": True, "case_id": cid}


@app.patch("/api/cases/{case_id}")
def update_case(case_id: int, payload: CasoPatchIn, ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR))) -> dict[str, Any]:
    return administracao.atualizar_caso(ator, case_id, payload.status, payload.notes)


@app.get("/api/cases")
def list_cases(status: CaseStatus | None = None, ator: Ator = Depends(requer_papel(Papel.ADMIN, Papel.PRESTADOR))) -> list[dict]:
    return administracao.listar_casos(ator, status)


@app.get("/api/feedback")
def list_feedback(prestador_id: str | None = None, limit: int = 200, ator: Ator = Depends(apenas_admin)) -> list[dict]:
    return administracao.listar_feedback(prestador_id, limit)


@app.get("/api/notifications/pending")
def pending_notifications(limit: int = 200, ator: Ator = Depends(apenas_admin)) -> list[dict]:
    return notificacoes_pendentes_flat(limit=limit)
