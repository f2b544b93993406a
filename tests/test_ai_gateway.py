"""Testes do cliente do gateway de IA (chamadas HTTP simuladas)."""
from unittest.mock import MagicMock, patch

import pytest
import requests

from melhor_saude.ai_gateway import ClienteIA
from melhor_saude.errors import ErroServicoExterno, LimiteIAExcedido, ServicoIAIndisponivel

MENSAGENS = [{"role": "system", "content": "És um assistente."}, {"role": "user", "content": "Olá"}]


def _resposta(status: int = 200, corpo=None) -> MagicMock:
    resp = MagicMock(status_code=status, ok=200 <= status < 300, text="erro")
    if isinstance(corpo, Exception):
        resp.json.side_effect = corpo
    else:
        resp.json.return_value = corpo
    return resp


def _ok(texto: str) -> MagicMock:
    return _resposta(200, {"choices": [{"message": {"role": "assistant", "content": texto}}]})


@pytest.fixture
def cliente() -> ClienteIA:
    return ClienteIA(url="http://ia.local/v1/chat/completions", api_key="chave", model="modelo-x", espera_base=0)


class TestClienteIA:
    def test_sem_chave(self):
        c = ClienteIA(api_key=None)
        assert c.configurado is False
        with pytest.raises(ServicoIAIndisponivel):
            c.completar(MENSAGENS)

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_resposta_ok(self, mock_post, cliente):
        mock_post.return_value = _ok("Olá! Como posso ajudar?")
        assert cliente.completar(MENSAGENS) == "Olá! Como posso ajudar?"

        args, kwargs = mock_post.call_args
        assert args[0] == "http://ia.local/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer chave"
        assert kwargs["json"] == {"model": "modelo-x", "messages": MENSAGENS, "stream": False}

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_limite_de_pedidos(self, mock_post, cliente):
        mock_post.return_value = _resposta(429)
        with pytest.raises(LimiteIAExcedido):
            cliente.completar(MENSAGENS)

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_sem_creditos(self, mock_post, cliente):
        mock_post.return_value = _resposta(402)
        with pytest.raises(ServicoIAIndisponivel):
            cliente.completar(MENSAGENS)

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_erro_do_servidor(self, mock_post, cliente):
        mock_post.return_value = _resposta(500)
        with pytest.raises(ErroServicoExterno) as exc:
            cliente.completar(MENSAGENS)
        assert exc.value.service_name == "gateway-ia"
        assert mock_post.call_count == 1

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_json_invalido(self, mock_post, cliente):
        mock_post.return_value = _resposta(200, ValueError("não é JSON"))
        with pytest.raises(ErroServicoExterno):
            cliente.completar(MENSAGENS)

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_resposta_vazia(self, mock_post, cliente):
        mock_post.return_value = _ok("")
        with pytest.raises(ErroServicoExterno):
            cliente.completar(MENSAGENS)


class TestRepeticoes:
    """Falhas de rede são repetidas; erros HTTP não."""

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_desiste_apos_tres_tentativas(self, mock_post, cliente):
        mock_post.side_effect = requests.ConnectionError("recusado")
        with pytest.raises(ErroServicoExterno):
            cliente.completar(MENSAGENS)
        assert mock_post.call_count == 3

    @patch("melhor_saude.ai_gateway.requests.post")
    def test_recupera_depois_de_falhas(self, mock_post, cliente):
        mock_post.side_effect = [requests.Timeout("lento"), requests.ConnectionError("recusado"), _ok("Finalmente")]
        assert cliente.completar(MENSAGENS) == "Finalmente"
        assert mock_post.call_count == 3
