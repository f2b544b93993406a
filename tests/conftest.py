"""Fixtures partilhadas: BD SQLite temporária e atores de cada papel."""
import os
import tempfile
from datetime import datetime, timedelta

# a configuração é lida no import de melhor_saude
_TMP = tempfile.mkdtemp(prefix="melhor_saude_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.sqlite')}"
os.environ["JWT_SECRET"] = "segredo-de-testes"
os.environ["APP_ENV"] = "test"
os.environ["AI_API_KEY"] = ""
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("LOG_DIR", None)

import pytest

from melhor_saude.auth_service import Ator, registar_utilizador
from melhor_saude.db import Base, engine, init_db
from melhor_saude.empresas import criar_empresa, criar_prestador
from melhor_saude.models import Papel, Pilar

PASSWORD = "Segredo123!"


@pytest.fixture(autouse=True)
def bd_limpa():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture
def admin() -> Ator:
    pid = registar_utilizador("admin@melhorsaude.pt", PASSWORD, "Administração", Papel.ADMIN)
    return Ator(id=pid, role=Papel.ADMIN, email="admin@melhorsaude.pt")


@pytest.fixture
def empresa(admin) -> str:
    return criar_empresa(admin, "Acme", "rh@acme.pt", sessions_allocated=100, seat_limit=10)


@pytest.fixture
def rh(empresa) -> Ator:
    pid = registar_utilizador("rh@acme.pt", PASSWORD, "Recursos Humanos Acme", Papel.HR, company_id=empresa)
    return Ator(id=pid, role=Papel.HR, email="rh@acme.pt", company_id=empresa)


@pytest.fixture
def colaborador(empresa) -> Ator:
    pid = registar_utilizador("ana@acme.pt", PASSWORD, "Ana Silva", Papel.USER, company_id=empresa)
    return Ator(id=pid, role=Papel.USER, email="ana@acme.pt", company_id=empresa)


@pytest.fixture
def prestador(admin) -> dict:
    return criar_prestador(admin, "Dra. Marta Lopes", "marta@melhorsaude.pt", Pilar.SAUDE_MENTAL, ["ansiedade"])


@pytest.fixture
def ator_prestador(prestador) -> Ator:
    return Ator(id=prestador["profile_id"], role=Papel.PRESTADOR, email=prestador["email"])


@pytest.fixture
def inicio() -> datetime:
    """Daqui a dois dias às 10:00 (UTC, sem timezone)."""
    dia = datetime.utcnow().date() + timedelta(days=2)
    return datetime.combine(dia, datetime.min.time()).replace(hour=10)
