"""Testes do cliente HTTP do dashboard (requests simulado)."""
import base64
import json
import time
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from melhor_saude.client import ClienteApi, ErroApi, jwt_is_expired, jwt_payload


def _token(payload: dict) -> str:
    corpo = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"cabecalho.{corpo}.assinatura"


def _resposta(status: int = 200, corpo=None, content_type: str = "application/json", text: str = "") -> MagicMock:
    r = MagicMock(status_code=status, ok=200 <= status < 300, headers={"content-type": content_type}, text=text, reason="Erro")
    if corpo is None:
        r.json.side_effect = ValueError("sem JSON")
    else:
        r.json.return_value = corpo
    return r


class TestJwt:
    def test_payload(self):
        assert jwt_payload(_token({"sub": "abc", "role": "hr"})) == {"sub": "abc", "role": "hr"}

    def test_token_malformado(self):
        assert jwt_payload("nao-e-jwt") == {}
        assert jwt_payload("a.!!!.c") == {}

    def test_expiracao(self):
        assert jwt_is_expired(_token({"exp": int(time.time()) - 60})) is True
        assert jwt_is_expired(_token({"exp": int(time.time()) + 3600})) is False
        assert jwt_is_expired(_token({"sub": "sem-exp"})) is False


class TestClienteApi:
    @patch("melhor_saude.client.requests.post")
    def test_login_guarda_token(self, mock_post):
        mock_post.return_value = _resposta(200, {"access_token": "tok", "user": {"role": "user"}})
        api = ClienteApi("http://api.local/")

        assert api.login("ana@acme.pt", "Segredo123!") == {"role": "user"}
        assert api.token == "tok"
        args, kwargs = mock_post.call_args
        assert args[0] == "http://api.local/api/auth/login"
        assert kwargs["data"] == {"username": "ana@acme.pt", "password": "Segredo123!"}

    @patch("melhor_saude.client.requests.request")
    def test_envia_bearer(self, mock_request):
        mock_request.return_value = _resposta(200, {"total_remaining": 3})
        api = ClienteApi("http://api.local", token="tok")

        assert api.saldo() == {"total_remaining": 3}
        args, kwargs = mock_request.call_args
        assert args == ("GET", "http://api.local/api/me/sessions")
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}

    @patch("melhor_saude.client.requests.request")
    def test_401_vira_permission_error(self, mock_request):
        mock_request.return_value = _resposta(401, {"error": "Token inválido ou expirado.", "code": "UNAUTHORIZED"})
        with pytest.raises(PermissionError):
            ClienteApi(token="velho").me()

    @patch("melhor_saude.client.requests.request")
    def test_erro_com_codigo(self, mock_request):
        mock_request.return_value = _resposta(400, {"error": "Sem sessões.", "code": "NO_SESSIONS_AVAILABLE"})
        with pytest.raises(ErroApi) as exc:
            ClienteApi(token="tok").concluir_sessao("b1")
        assert exc.value.status_code == 400
        assert exc.value.message == "Sem sessões."
        assert exc.value.code == "NO_SESSIONS_AVAILABLE"

    @patch("melhor_saude.client.requests.request")
    def test_erro_sem_json(self, mock_request):
        mock_request.return_value = _resposta(502, None, content_type="text/html", text="Bad Gateway")
        with pytest.raises(ErroApi) as exc:
            ClienteApi(token="tok").pilares()
        assert exc.value.message == "Bad Gateway"
        assert exc.value.code is None

    @patch("melhor_saude.client.requests.request")
    def test_texto_csv(self, mock_request):
        mock_request.return_value = _resposta(200, None, content_type="text/csv; charset=utf-8", text="Nome,Email\n")
        assert ClienteApi(token="tok").relatorio(2025, 3, formato="csv") == "Nome,Email\n"
        assert mock_request.call_args.kwargs["params"] == {"year": 2025, "month": 3, "format": "csv"}

    @patch("melhor_saude.client.requests.request")
    def test_reposicao_de_password(self, mock_request):
        mock_request.return_value = _resposta(200, {"ok": True})
        api = ClienteApi("http://api.local")
        api.pedir_reposicao_password("ana@acme.pt")
        assert mock_request.call_args.args == ("POST", "http://api.local/api/auth/password-reset/request")
        assert mock_request.call_args.kwargs["json"] == {"email": "ana@acme.pt"}

        api.repor_password("tok-reset", "NovaSenha123")
        assert mock_request.call_args.args[1] == "http://api.local/api/auth/password-reset/complete"
        assert mock_request.call_args.kwargs["json"] == {"token": "tok-reset", "new_password": "NovaSenha123"}

    @patch("melhor_saude.client.requests.request")
    def test_criar_marcacao(self, mock_request):
        mock_request.return_value = _resposta(200, {"id": "b1"})
        ClienteApi(token="tok").criar_marcacao("p1", datetime(2025, 3, 3, 10, 0))
        assert mock_request.call_args.kwargs["json"] == {
            "prestador_id": "p1",
            "booking_date": "2025-03-03T10:00:00",
            "duration": 60,
            "notes": None,
        }

    @patch("melhor_saude.client.requests.request")
    def test_convidar_csv_envia_ficheiro(self, mock_request):
        mock_request.return_value = _resposta(200, {"created": 1, "failed": 0})
        ClienteApi(token="tok").convidar_csv("c1", b"Nome,Email\n", sessoes_padrao=5)
        kwargs = mock_request.call_args.kwargs
        assert kwargs["files"]["file"][0] == "convites.csv"
        assert kwargs["data"] == {"default_sessions": "5"}
