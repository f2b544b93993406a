"""Testes HTTP da app FastAPI (TestClient sobre a BD temporária)."""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from melhor_saude.api_main import app
from melhor_saude.auth_service import registar_utilizador
from melhor_saude.models import AllocationType, Papel
from melhor_saude.notificacoes import notificacoes_pendentes_flat
from melhor_saude.sessoes import atribuir_sessoes

PASSWORD = "Segredo123!"


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _login(client: TestClient, email: str, password: str = PASSWORD) -> dict:
    r = client.post("/api/auth/login", data={"username": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def h_admin(client, admin) -> dict:
    return _login(client, admin.email)


@pytest.fixture
def h_rh(client, rh) -> dict:
    return _login(client, rh.email)


@pytest.fixture
def h_user(client, colaborador) -> dict:
    return _login(client, colaborador.email)


@pytest.fixture
def h_prestador(client, prestador) -> dict:
    return _login(client, prestador["email"], prestador["temporary_password"])


class TestAuthApi:
    def test_login_devolve_token_e_perfil(self, client, colaborador):
        r = client.post("/api/auth/login", data={"username": "ANA@acme.pt", "password": PASSWORD})
        assert r.status_code == 200
        body = r.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["role"] == "user"

        me = client.get("/api/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.json()["email"] == "ana@acme.pt"

    def test_credenciais_invalidas(self, client, colaborador):
        r = client.post("/api/auth/login", data={"username": "ana@acme.pt", "password": "errada"})
        assert r.status_code == 401
        assert r.json()["code"] == "UNAUTHORIZED"

    def test_token_invalido(self, client):
        r = client.get("/api/me", headers={"Authorization": "Bearer nao-e-um-token"})
        assert r.status_code == 401
        assert r.json() == {"error": "Token inválido ou expirado.", "code": "UNAUTHORIZED"}

    def test_prestador_ve_a_sua_ficha(self, client, h_prestador, prestador):
        me = client.get("/api/me", headers=h_prestador).json()
        assert me["prestador"]["id"] == prestador["id"]

    def test_alterar_password(self, client, h_user):
        r = client.post("/api/me/password", json={"current_password": "errada", "new_password": "NovaSenha123"}, headers=h_user)
        assert r.status_code == 401
        r = client.post("/api/me/password", json={"current_password": PASSWORD, "new_password": "NovaSenha123"}, headers=h_user)
        assert r.json() == {"ok": True}
        _login(client, "ana@acme.pt", "NovaSenha123")


class TestErrosApi:
    def test_validacao(self, client, h_admin):
        r = client.post("/api/companies", json={"name": "", "contact_email": "rh@beta.pt"}, headers=h_admin)
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"

    def test_sem_permissao(self, client, h_user):
        r = client.get("/api/companies", headers=h_user)
        assert r.status_code == 403
        assert r.json()["code"] == "FORBIDDEN"

    def test_nao_encontrado(self, client, h_admin):
        r = client.get("/api/companies/nao-existe", headers=h_admin)
        assert r.status_code == 404
        assert r.json()["code"] == "NOT_FOUND"

    def test_erro_inesperado(self, admin):
        with TestClient(app, raise_server_exceptions=False) as c:
            h = _login(c, admin.email)
            with patch("melhor_saude.api_main.relatorios.visao_geral_plataforma", side_effect=RuntimeError("boom")):
                r = c.get("/api/admin/overview", headers=h)
        assert r.status_code == 500
        assert r.json() == {"error": "Erro interno do servidor.", "code": "INTERNAL_ERROR"}

    def test_publicos(self, client):
        assert client.get("/api/health").json() == {"ok": True}
        assert len(client.get("/api/pillars").json()) == 4


class TestEmpresasApi:
    def test_criar_e_listar(self, client, h_admin):
        r = client.post(
            "/api/companies",
            json={"name": "Beta", "contact_email": "rh@beta.pt", "sessions_allocated": 40, "plan_type": "premium"},
            headers=h_admin,
        )
        assert r.status_code == 200
        assert r.json()["plan_type"] == "premium"
        assert [c["name"] for c in client.get("/api/companies", headers=h_admin).json()] == ["Beta"]

    def test_rh_so_ve_a_sua_empresa(self, client, admin, empresa, h_rh):
        assert client.get(f"/api/companies/{empresa}/summary", headers=h_rh).status_code == 200
        outra = client.post(
            "/api/companies", json={"name": "Beta", "contact_email": "rh@beta.pt"}, headers=_login(client, admin.email)
        ).json()
        assert client.get(f"/api/companies/{outra['id']}", headers=h_rh).status_code == 403

    def test_rh_lista_so_os_seus_utilizadores(self, client, admin, empresa, colaborador, h_rh):
        h_admin = _login(client, admin.email)
        outra = client.post("/api/companies", json={"name": "Beta", "contact_email": "rh@beta.pt"}, headers=h_admin).json()
        client.post(
            "/api/users", json={"email": "rui@beta.pt", "name": "Rui", "company_id": outra["id"]}, headers=h_admin
        )
        emails = {u["email"] for u in client.get(f"/api/users?company_id={outra['id']}", headers=h_rh).json()}
        assert emails == {"ana@acme.pt", "rh@acme.pt"}

    def test_desativar_empresa(self, client, h_admin, empresa, colaborador):
        r = client.post(f"/api/companies/{empresa}/status", json={"is_active": False}, headers=h_admin)
        assert r.json()["users_affected"] == 1
        r = client.post("/api/auth/login", data={"username": "ana@acme.pt", "password": PASSWORD})
        assert r.status_code == 401


class TestMarcacoesApi:
    def test_fluxo_completo(self, client, admin, colaborador, prestador, inicio, h_user, h_prestador):
        atribuir_sessoes(admin, colaborador.id, AllocationType.COMPANY, 3)

        livres = client.get(
            f"/api/prestadores/{prestador['id']}/availability",
            params={"day": inicio.date().isoformat()},
            headers=h_user,
        ).json()
        assert "10:00" in livres["slots"]

        r = client.post(
            "/api/bookings",
            json={"prestador_id": prestador["id"], "booking_date": inicio.isoformat(), "notes": "Primeira"},
            headers=h_user,
        )
        assert r.status_code == 200
        booking_id = r.json()["id"]

        # utilizador não conclui
        assert client.post(f"/api/bookings/{booking_id}/complete", json={}, headers=h_user).status_code == 403

        r = client.post(f"/api/bookings/{booking_id}/complete", json={"notes": "Correu bem"}, headers=h_prestador)
        assert r.json() == {
            "booking_id": booking_id,
            "previous_status": "scheduled",
            "status": "completed",
            "session_deducted": True,
            "session_refunded": False,
        }
        assert client.get("/api/me/sessions", headers=h_user).json()["total_remaining"] == 2

        r = client.post(f"/api/bookings/{booking_id}/feedback", json={"rating": 5}, headers=h_user)
        assert r.json()["ok"] is True
        assert client.get(f"/api/prestadores/{prestador['id']}/rating", headers=h_user).json()["average_rating"] == 5.0

        r = client.post(f"/api/bookings/{booking_id}/cancel-refund", json={}, headers=h_prestador)
        assert r.json()["session_refunded"] is True
        assert client.get("/api/me/sessions", headers=h_user).json()["total_remaining"] == 3

    def test_conclusao_sem_sessoes(self, client, colaborador, prestador, inicio, h_user, h_prestador):
        b = client.post(
            "/api/bookings", json={"prestador_id": prestador["id"], "booking_date": inicio.isoformat()}, headers=h_user
        ).json()
        r = client.post(f"/api/bookings/{b['id']}/complete", json={}, headers=h_prestador)
        assert r.status_code == 400
        assert r.json()["code"] == "NO_SESSIONS_AVAILABLE"

    def test_cancelar_exige_motivo(self, client, colaborador, prestador, inicio, h_user):
        b = client.post(
            "/api/bookings", json={"prestador_id": prestador["id"], "booking_date": inicio.isoformat()}, headers=h_user
        ).json()
        assert client.post(f"/api/bookings/{b['id']}/cancel", json={}, headers=h_user).status_code == 400
        r = client.post(f"/api/bookings/{b['id']}/cancel", json={"reason": "Doente"}, headers=h_user)
        assert r.json()["status"] == "cancelled"


class TestConvitesApi:
    def test_lote_e_registo(self, client, empresa, h_rh):
        csv = "Nome,Email,Departamento,Cargo,Sessões\nJoão,joao@acme.pt,,,4\nSem Email,,,,\n"
        r = client.post(
            f"/api/companies/{empresa}/invites/bulk",
            files={"file": ("convites.csv", csv.encode("utf-8"), "text/csv")},
            headers=h_rh,
        )
        body = r.json()
        assert (body["created"], body["failed"]) == (1, 1)
        assert body["csv"].startswith("Email,Estado,Código,Erro")

        codigo = client.get(f"/api/companies/{empresa}/invites", headers=h_rh).json()[0]["invite_code"]
        r = client.post("/api/auth/register-invite", json={"invite_code": codigo, "password": "Segredo123!"})
        assert r.status_code == 200
        novo = {"Authorization": f"Bearer {r.json()['access_token']}"}
        assert client.get("/api/me/sessions", headers=novo).json()["total_remaining"] == 4

    def test_lote_em_latin1(self, client, empresa, h_rh):
        csv = "Nome,Email,Departamento,Cargo,Sessões\nJoão Gonçalves,joao@acme.pt,Direção,,4\n"
        r = client.post(
            f"/api/companies/{empresa}/invites/bulk",
            files={"file": ("convites.csv", csv.encode("latin-1"), "text/csv")},
            headers=h_rh,
        )
        assert r.status_code == 200
        assert r.json()["created"] == 1
        convite = client.get(f"/api/companies/{empresa}/invites", headers=h_rh).json()[0]
        assert convite["name"] == "João Gonçalves"

    def test_lote_ilegivel_e_400(self, client, empresa, h_rh):
        r = client.post(
            f"/api/companies/{empresa}/invites/bulk",
            files={"file": ("convites.csv", b"Nome,Email\n\x81\x8d,x@acme.pt\n", "text/csv")},
            headers=h_rh,
        )
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_REQUEST"

    def test_modelo_csv(self, client, h_rh):
        r = client.get("/api/invites/template", headers=h_rh)
        assert r.headers["content-type"].startswith("text/csv")
        assert r.text.startswith("Nome,Email")


class TestRelatoriosApi:
    def test_rh_fica_na_sua_empresa(self, client, admin, empresa, colaborador, h_rh):
        outra = client.post(
            "/api/companies", json={"name": "Beta", "contact_email": "rh@beta.pt"}, headers=_login(client, admin.email)
        ).json()
        r = client.get("/api/reports/monthly", params={"year": 2025, "month": 3, "company_id": outra["id"]}, headers=h_rh)
        assert r.json()["company_name"] == "Acme"

    def test_formato_csv(self, client, empresa, h_rh):
        r = client.get("/api/reports/monthly", params={"year": 2025, "month": 3, "format": "csv"}, headers=h_rh)
        assert r.headers["content-type"].startswith("text/csv")
        assert 'filename="relatorio_2025_03.csv"' in r.headers["content-disposition"]

    def test_mes_invalido(self, client, h_admin):
        r = client.get("/api/reports/monthly", params={"year": 2025, "month": 13}, headers=h_admin)
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"


class TestChatApi:
    def test_avaliacao_chat_e_pedido(self, client, admin, colaborador, prestador, inicio, h_user):
        a = client.post(
            "/api/assessments", json={"pillar": "saude_mental", "topic": "ansiedade", "symptoms": ["insonia"]}, headers=h_user
        ).json()
        chat = client.post("/api/chat/sessions", json={"assessment_id": a["id"]}, headers=h_user).json()

        r = client.post(f"/api/chat/sessions/{chat['id']}/messages", json={"content": "Ando muito ansiosa"}, headers=h_user)
        assert r.json()["source"] == "rules"
        assert len(client.get(f"/api/chat/sessions/{chat['id']}/messages", headers=h_user).json()) == 3

        pedido = client.post("/api/session-requests", json={"chat_session_id": chat["id"]}, headers=h_user).json()
        h_admin = _login(client, admin.email)
        r = client.post(
            f"/api/session-requests/{pedido['id']}/assign",
            json={"prestador_id": prestador["id"], "booking_date": inicio.isoformat()},
            headers=h_admin,
        )
        assert r.json()["booking"]["user_id"] == colaborador.id


class TestReposicaoPasswordApi:
    def _token_enviado(self) -> str:
        n = [n for n in notificacoes_pendentes_flat() if n["tipo"] == "password_reset"][-1]
        return n["message"].rsplit(" ", 1)[-1]

    def test_resposta_igual_para_email_desconhecido(self, client, colaborador):
        conhecido = client.post("/api/auth/password-reset/request", json={"email": "ana@acme.pt"})
        desconhecido = client.post("/api/auth/password-reset/request", json={"email": "ninguem@acme.pt"})
        assert conhecido.status_code == desconhecido.status_code == 200
        assert conhecido.json() == desconhecido.json()

    def test_repor_e_entrar(self, client, colaborador):
        client.post("/api/auth/password-reset/request", json={"email": "ana@acme.pt"})
        token = self._token_enviado()
        assert client.post("/api/auth/password-reset/verify", json={"token": token}).json() == {"valid": True}

        r = client.post("/api/auth/password-reset/complete", json={"token": token, "new_password": "NovaSenha123"})
        assert r.status_code == 200
        _login(client, "ana@acme.pt", "NovaSenha123")

        r = client.post("/api/auth/password-reset/complete", json={"token": token, "new_password": "OutraSenha123"})
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_REQUEST"
        assert client.post("/api/auth/password-reset/verify", json={"token": token}).json() == {"valid": False}


class TestDisponibilidadeApi:
    def test_horario_limita_slots_e_marcacoes(self, client, prestador, inicio, h_prestador, h_user):
        r = client.post(
            f"/api/prestadores/{prestador['id']}/schedule",
            json={"day_of_week": inicio.weekday(), "start_time": "14:00", "end_time": "16:00"},
            headers=h_prestador,
        )
        assert r.status_code == 200, r.text
        disp = client.get(f"/api/prestadores/{prestador['id']}/schedule", headers=h_user).json()
        assert disp["schedule"][0]["start_time"] == "14:00"

        slots = client.get(
            f"/api/prestadores/{prestador['id']}/availability", params={"day": inicio.date().isoformat()}, headers=h_user
        ).json()["slots"]
        assert slots == ["14:00", "15:00"]

        r = client.post(
            "/api/bookings", json={"prestador_id": prestador["id"], "booking_date": inicio.isoformat()}, headers=h_user
        )
        assert r.status_code == 400

    def test_ausencia_e_remocao(self, client, prestador, inicio, h_prestador, h_user):
        dia = inicio.date().isoformat()
        r = client.post(
            f"/api/prestadores/{prestador['id']}/leave",
            json={"start_date": dia, "end_date": dia, "leave_type": "training"},
            headers=h_prestador,
        )
        assert r.status_code == 200, r.text
        leave_id = r.json()["id"]
        params = {"day": dia}
        assert client.get(f"/api/prestadores/{prestador['id']}/availability", params=params, headers=h_user).json()["slots"] == []

        assert client.delete(f"/api/prestadores/leave/{leave_id}", headers=h_prestador).status_code == 200
        assert client.get(f"/api/prestadores/{prestador['id']}/availability", params=params, headers=h_user).json()["slots"]

    def test_utilizador_nao_gere(self, client, prestador, h_user):
        r = client.post(
            f"/api/prestadores/{prestador['id']}/breaks",
            json={"start_time": "12:00", "end_time": "13:00", "day_of_week": 0},
            headers=h_user,
        )
        assert r.status_code == 403


class TestRhSemEmpresaApi:
    def test_sem_acesso_a_dados(self, client, colaborador):
        registar_utilizador("rh@solto.pt", PASSWORD, "RH Solto", Papel.HR)
        h = _login(client, "rh@solto.pt")
        r = client.get("/api/users", headers=h)
        assert r.status_code == 403
        assert r.json()["code"] == "FORBIDDEN"
        assert client.get("/api/reports/monthly", params={"year": 2025, "month": 3}, headers=h).status_code == 403
        assert client.get("/api/bookings", headers=h).status_code == 403
