"""
Cliente do gateway de IA (API compatível com OpenAI /chat/completions).

Falhas de rede e timeouts são repetidos com tenacity; respostas HTTP de erro
são convertidas nas exceções de domínio que a API devolve ao cliente.
"""
from __future__ import annotations

import logging

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import AI_API_KEY, AI_GATEWAY_URL, AI_MODEL, AI_TIMEOUT_SECONDS
from .errors import ErroServicoExterno, LimiteIAExcedido, ServicoIAIndisponivel

logger = logging.getLogger(__name__)

SERVICO = "gateway-ia"


class ClienteIA:
    def __init__(
        self,
        url: str = AI_GATEWAY_URL,
        api_key: str | None = AI_API_KEY,
        model: str = AI_MODEL,
        timeout: float = AI_TIMEOUT_SECONDS,
        tentativas: int = 3,
        espera_base: float = 1.0,
    ):
        self.url = url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.tentativas = tentativas
        self.espera_base = espera_base

    @property
    def configurado(self) -> bool:
        return bool(self.api_key)

    def _post(self, payload: dict) -> requests.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.tentativas),
            wait=wait_exponential(multiplier=self.espera_base, max=10),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            reraise=True,
        )
        for tentativa in retrying:
            with tentativa:
                return requests.post(
                    self.url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                    timeout=self.timeout,
                )

    def completar(self, messages: list[dict]) -> str:
        """Envia a conversa (já com a mensagem de sistema) e devolve o texto da resposta."""
        if not self.configurado:
            raise ServicoIAIndisponivel("O assistente de IA não está configurado.")

        payload = {"model": self.model, "messages": messages, "stream": False}
        try:
            resp = self._post(payload)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning("Gateway de IA inacessível após %d tentativas: %s", self.tentativas, e)
            raise ErroServicoExterno("gateway inacessível", SERVICO) from e

        if resp.status_code == 429:
            raise LimiteIAExcedido("Limite de pedidos excedido. Aguarde um momento e tente novamente.")
        if resp.status_code == 402:
            raise ServicoIAIndisponivel("Serviço temporariamente indisponível. Contacte o suporte.")
        if not resp.ok:
            logger.warning("Gateway de IA respondeu %s: %s", resp.status_code, resp.text[:300])
            raise ErroServicoExterno(f"resposta {resp.status_code}", SERVICO)

        try:
            conteudo = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ErroServicoExterno("resposta inválida", SERVICO) from e
        if not conteudo:
            raise ErroServicoExterno("resposta vazia", SERVICO)
        return conteudo
