"""
Cliente HTTP da API Melhor Saúde usado pelo dashboard Streamlit.

401 é sempre convertido em PermissionError (token inválido/expirado ou
backend reiniciado); os restantes erros da API em ErroApi com a mensagem
e o código devolvidos pelo servidor.
"""
from __future__ import annotations

import base64
import json
from datetime import date, datetime, timezone
from typing import Any

import requests

from .config import API_BASE


class ErroApi(Exception):
    def __init__(self, status_code: int, message: str, code: str | None = None):
        self.status_code = status_code
        self.message = message
        self.code = code
        super().__init__(f"{status_code}: {message}")



# JWT helpers (só para a UI, sem verificar a assinatura)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    try:
        exp_int = int(exp)
    except (TypeError, ValueError):
        return False
    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp_int - 5)



# Cliente

class ClienteApi:
    def __init__(self, base_url: str = API_BASE, token: str | None = None, timeout: float = 15):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _tratar(self, r: requests.Response) -> Any:
        if r.status_code == 401:
            raise PermissionError("401 Unauthorized (token inválido/expirado ou backend reiniciado).")
        if not r.ok:
            try:
                body = r.json()
            except ValueError:
                body = {}
            raise ErroApi(r.status_code, body.get("error") or r.text or r.reason, body.get("code"))
        if "application/json" in r.headers.get("content-type", ""):
            return r.json()
        return r.text

    def _pedido(self, metodo: str, path: str, **kwargs) -> Any:
        r = requests.request(metodo, f"{self.base_url}{path}", headers=self._headers(), timeout=self.timeout, **kwargs)
        return self._tratar(r)

    def get(self, path: str, params: dict | None = None) -> Any:
        return self._pedido("GET", path, params=params)

    def post(self, path: str, payload: dict | None = None) -> Any:
        return self._pedido("POST", path, json=payload or {})

    def put(self, path: str, payload: dict) -> Any:
        return self._pedido("PUT", path, json=payload)

    def patch(self, path: str, payload: dict) -> Any:
        return self._pedido("PATCH", path, json=payload)

    # ---- auth ----
    def login(self, email: str, password: str) -> dict:
        # OAuth2PasswordRequestForm => x-www-form-urlencoded
        r = requests.post(
            f"{self.base_url}/api/auth/login",
            data={"username": email, "password": password},
            timeout=self.timeout,
        )
        data = self._tratar(r)
        self.token = data["access_token"]
        return data["user"]

    def registar_com_convite(self, code: str, password: str, name: str | None = None, email: str | None = None) -> dict:
        data = self.post("/api/auth/register-invite", {"invite_code": code, "password": password, "name": name, "email": email})
        self.token = data["access_token"]
        return data["user"]

    def pedir_reposicao_password(self, email: str) -> dict:
        return self.post("/api/auth/password-reset/request", {"email": email})

    def repor_password(self, token: str, nova_password: str) -> dict:
        return self.post("/api/auth/password-reset/complete", {"token": token, "new_password": nova_password})

    def me(self) -> dict:
        return self.get("/api/me")

    # ---- utilizador ----
    def pilares(self) -> list[dict]:
        return self.get("/api/pillars")

    def saldo(self) -> dict:
        return self.get("/api/me/sessions")

    def resgatar_convite(self, code: str) -> dict:
        return self.post("/api/invites/redeem", {"invite_code": code})

    def prestadores(self, pillar: str | None = None) -> list[dict]:
        return self.get("/api/prestadores", params={"pillar": pillar} if pillar else None)

    def horarios(self, prestador_id: str, dia: date, duracao: int = 60) -> list[str]:
        res = self.get(f"/api/prestadores/{prestador_id}/availability", params={"day": dia.isoformat(), "duration": duracao})
        return res["slots"]

    def disponibilidade(self, prestador_id: str) -> dict:
        return self.get(f"/api/prestadores/{prestador_id}/schedule")

    def criar_marcacao(self, prestador_id: str, booking_date: datetime, duration: int = 60, notes: str | None = None) -> dict:
        return self.post(
            "/api/bookings",
            {"prestador_id": prestador_id, "booking_date": booking_date.isoformat(), "duration": duration, "notes": notes},
        )

    def marcacoes(self, status: str | None = None) -> list[dict]:
        return self.get("/api/bookings", params={"status": status} if status else None)

    def cancelar_marcacao(self, booking_id: str, reason: str) -> dict:
        return self.post(f"/api/bookings/{booking_id}/cancel", {"reason": reason})

    def concluir_sessao(self, booking_id: str, notes: str | None = None) -> dict:
        return self.post(f"/api/bookings/{booking_id}/complete", {"notes": notes})

    # ---- avaliação / chat ----
    def iniciar_avaliacao(self, pillar: str, topic: str, symptoms: list[str], context: str | None = None) -> dict:
        return self.post("/api/assessments", {"pillar": pillar, "topic": topic, "symptoms": symptoms, "context": context})

    def iniciar_chat(self, assessment_id: str) -> dict:
        return self.post("/api/chat/sessions", {"assessment_id": assessment_id})

    def enviar_mensagem(self, session_id: str, content: str) -> dict:
        return self.post(f"/api/chat/sessions/{session_id}/messages", {"content": content})

    def pedir_sessao_humana(self, assessment_id: str | None = None, chat_session_id: str | None = None, notes: str | None = None) -> dict:
        return self.post(
            "/api/session-requests",
            {"assessment_id": assessment_id, "chat_session_id": chat_session_id, "notes": notes},
        )

    # ---- RH ----
    def modelo_convites(self) -> str:
        return self.get("/api/invites/template")

    def convidar_csv(self, company_id: str, conteudo: bytes, nome_ficheiro: str = "convites.csv", sessoes_padrao: int = 10) -> dict:
        return self._pedido(
            "POST",
            f"/api/companies/{company_id}/invites/bulk",
            files={"file": (nome_ficheiro, conteudo, "text/csv")},
            data={"default_sessions": str(sessoes_padrao)},
        )

    def convites(self, company_id: str, status: str | None = None) -> list[dict]:
        return self.get(f"/api/companies/{company_id}/invites", params={"status": status} if status else None)

    def adocao(self, company_id: str) -> dict:
        return self.get(f"/api/companies/{company_id}/adoption")

    # ---- admin ----
    def empresas(self) -> list[dict]:
        return self.get("/api/companies")

    def alterar_estado_empresa(self, company_id: str, is_active: bool) -> dict:
        return self.post(f"/api/companies/{company_id}/status", {"is_active": is_active})

    def relatorio(self, ano: int, mes: int, company_id: str | None = None, formato: str = "json") -> Any:
        params: dict[str, Any] = {"year": ano, "month": mes, "format": formato}
        if company_id:
            params["company_id"] = company_id
        return self.get("/api/reports/monthly", params=params)

    def visao_geral(self) -> dict:
        return self.get("/api/admin/overview")
