"""Exceções de domínio. Cada classe sabe o status HTTP e o código devolvidos pela API."""
from __future__ import annotations

from typing import Any


class ErroAplicacao(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Any | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class PedidoInvalido(ErroAplicacao):
    status_code = 400
    code = "INVALID_REQUEST"


class NaoAutenticado(ErroAplicacao):
    status_code = 401
    code = "UNAUTHORIZED"


class SemPermissao(ErroAplicacao):
    status_code = 403
    code = "FORBIDDEN"


class NaoEncontrado(ErroAplicacao):
    status_code = 404
    code = "NOT_FOUND"


class Conflito(ErroAplicacao):
    status_code = 409
    code = "CONFLICT"


class SemSessoesDisponiveis(ErroAplicacao):
    status_code = 400
    code = "NO_SESSIONS_AVAILABLE"


class QuotaEmpresaExcedida(ErroAplicacao):
    status_code = 400
    code = "COMPANY_QUOTA_EXCEEDED"


class ErroServicoExterno(ErroAplicacao):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, message: str, service_name: str = "desconhecido", details: Any | None = None):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LimiteIAExcedido(ErroAplicacao):
    status_code = 429
    code = "AI_RATE_LIMIT"


class ServicoIAIndisponivel(ErroAplicacao):
    status_code = 503
    code = "AI_UNAVAILABLE"
