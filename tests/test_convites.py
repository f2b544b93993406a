"""Testes dos convites: códigos, importação CSV, resgate e adoção."""
import re
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from melhor_saude.auth_service import Ator, autenticar, obter_perfil, registar_utilizador
from melhor_saude.convites import (
    adocao_empresa,
    cancelar_convite,
    convidar_em_lote,
    criar_convite,
    descodificar_csv,
    expirar_convites,
    exportar_resultados_csv,
    gerar_codigo_convite,
    ler_csv_convites,
    listar_convites,
    modelo_csv,
    registar_com_convite,
    resgatar_convite,
)
from melhor_saude.empresas import alterar_estado_empresa, criar_empresa
from melhor_saude.errors import Conflito, NaoEncontrado, PedidoInvalido, QuotaEmpresaExcedida, SemPermissao
from melhor_saude.models import InviteStatus, Papel
from melhor_saude.sessoes import saldo_sessoes

CODIGO = re.compile(r"^MS-[A-HJ-NP-Z2-9]{4}$")


@pytest.fixture
def sem_empresa() -> Ator:
    pid = registar_utilizador("joao@acme.pt", "Segredo123!", "João Santos")
    return Ator(id=pid, role=Papel.USER, email="joao@acme.pt")


class TestCodigos:
    def test_formato(self):
        for _ in range(20):
            assert CODIGO.match(gerar_codigo_convite())

    def test_evita_codigos_existentes(self):
        with patch("melhor_saude.convites.secrets.choice", side_effect=list("AAAABBBB")):
            assert gerar_codigo_convite({"MS-AAAA"}) == "MS-BBBB"


class TestLeituraCsv:
    def test_modelo_e_valido(self):
        linhas, erros = ler_csv_convites(modelo_csv())
        assert erros == []
        assert [l.email for l in linhas] == ["ana.silva@exemplo.pt", "joao.santos@exemplo.pt"]

    def test_linhas_validas_e_erros(self):
        texto = (
            "\ufeffNome,Email,Departamento,Cargo,Sessões\n"
            'Ana Silva,Ana@Acme.pt,"Vendas, Norte",Técnica,5\n'
            ",,,,\n"
            "Sem Email,,,,\n"
            "Rui,email-invalido,,,\n"
            "Ana Outra,ana@acme.pt,,,\n"
            "Marta,marta@acme.pt,,,abc\n"
            "João,joao@acme.pt,,,\n"
        )
        linhas, erros = ler_csv_convites(texto, sessoes_padrao=7)

        assert [(l.line, l.email, l.sessions) for l in linhas] == [(2, "ana@acme.pt", 5), (8, "joao@acme.pt", 7)]
        assert linhas[0].department == "Vendas, Norte"
        assert linhas[1].department is None
        assert [(e.line, e.field) for e in erros] == [(4, "email"), (5, "email"), (6, "email"), (7, "sessions")]
        assert erros[2].message == "Email duplicado no ficheiro."

    def test_cabecalhos_em_ingles(self):
        linhas, erros = ler_csv_convites("Name,E-mail,Job Title\nAna,ana@acme.pt,Analista\n")
        assert erros == []
        assert linhas[0].job_title == "Analista"

    def test_cabecalho_invalido(self):
        linhas, erros = ler_csv_convites("Nome;Email\nAna;ana@acme.pt\n")
        assert linhas == []
        assert len(erros) == 1
        assert (erros[0].line, erros[0].field) == (0, "file")


class TestCodificacaoCsv:
    """Ficheiros exportados do Excel chegam muitas vezes em Windows-1252."""

    def test_utf8_com_bom(self):
        assert descodificar_csv("Nome,Sessões\n".encode("utf-8-sig")) == "Nome,Sessões\n"

    def test_windows_1252(self):
        texto = descodificar_csv("Nome,Email,Sessões\nJoão,joao@acme.pt,4\n".encode("cp1252"))
        linhas, erros = ler_csv_convites(texto)
        assert erros == []
        assert (linhas[0].name, linhas[0].sessions) == ("João", 4)

    def test_bytes_ilegiveis(self):
        with pytest.raises(PedidoInvalido):
            descodificar_csv(b"Nome,Email\n\x81\x8d\n")


class TestCriarConvite:
    def test_convite_pendente(self, rh, empresa):
        inv = criar_convite(rh, empresa, "Joao@Acme.pt", name="João", sessions=4)
        assert CODIGO.match(inv["invite_code"])
        assert inv["email"] == "joao@acme.pt"
        assert inv["status"] == "pending"
        assert inv["sessions_allocated"] == 4
        assert inv["invited_by"] == rh.id

    def test_convite_pendente_duplicado(self, rh, empresa):
        criar_convite(rh, empresa, "joao@acme.pt")
        with pytest.raises(Conflito):
            criar_convite(rh, empresa, "joao@acme.pt")

    def test_email_ja_colaborador(self, rh, empresa, colaborador):
        with pytest.raises(Conflito):
            criar_convite(rh, empresa, colaborador.email)

    def test_rh_de_outra_empresa(self, admin, rh):
        outra = criar_empresa(admin, "Beta", "rh@beta.pt")
        with pytest.raises(SemPermissao):
            criar_convite(rh, outra, "joao@beta.pt")

    def test_utilizador_nao_convida(self, colaborador, empresa):
        with pytest.raises(SemPermissao):
            criar_convite(colaborador, empresa, "joao@acme.pt")

    def test_empresa_inativa(self, admin, empresa):
        alterar_estado_empresa(admin, empresa, False)
        with pytest.raises(PedidoInvalido):
            criar_convite(admin, empresa, "joao@acme.pt")


class TestConviteEmLote:
    """Cada linha é independente: uma linha com erro não impede as restantes."""

    def test_resultados_por_linha(self, rh, empresa, colaborador):
        texto = (
            "Nome,Email,Departamento,Cargo,Sessões\n"
            "João,joao@acme.pt,,,\n"
            "Ana Silva,ana@acme.pt,,,\n"
            "Rui,rui@acme.pt,,,3\n"
            "Sem Email,,,,\n"
        )
        resultados = convidar_em_lote(rh, empresa, texto)

        assert [(r.line, r.ok) for r in resultados] == [(2, True), (3, False), (4, True), (5, False)]
        assert resultados[1].error == "Este email já pertence a um colaborador da empresa."
        assert len(listar_convites(rh, empresa)) == 2

        saida = exportar_resultados_csv(resultados).splitlines()
        assert saida[0] == "Email,Estado,Código,Erro"
        assert saida[1].startswith("joao@acme.pt,Sucesso,MS-")
        assert saida[2].startswith("ana@acme.pt,Erro,,")

    def test_rh_de_outra_empresa(self, admin, rh):
        outra = criar_empresa(admin, "Beta", "rh@beta.pt")
        with pytest.raises(SemPermissao):
            convidar_em_lote(rh, outra, "Nome,Email\nJoão,joao@beta.pt\n")


class TestResgate:
    def test_resgatar_liga_empresa_e_sessoes(self, rh, empresa, sem_empresa):
        inv = criar_convite(rh, empresa, "joao@acme.pt", department="Comercial", sessions=5)
        res = resgatar_convite(sem_empresa, inv["invite_code"].lower())

        assert res["company_id"] == empresa
        assert res["company_name"] == "Acme"
        perfil = obter_perfil(sem_empresa.id)
        assert perfil.company_id == empresa
        assert perfil.department == "Comercial"
        assert saldo_sessoes(sem_empresa.id)["allocations"]["company"]["allocated"] == 5
        assert listar_convites(rh, empresa, InviteStatus.ACCEPTED)[0]["accepted_at"] is not None

    def test_convite_ja_usado(self, rh, empresa, sem_empresa):
        inv = criar_convite(rh, empresa, "joao@acme.pt")
        resgatar_convite(sem_empresa, inv["invite_code"])
        with pytest.raises(PedidoInvalido):
            resgatar_convite(sem_empresa, inv["invite_code"])

    def test_ja_pertence_a_empresa(self, rh, empresa, colaborador):
        inv = criar_convite(rh, empresa, "outro@acme.pt")
        with pytest.raises(PedidoInvalido):
            resgatar_convite(colaborador, inv["invite_code"])

    def test_pertence_a_outra_empresa(self, admin, rh, empresa):
        outra = criar_empresa(admin, "Beta", "rh@beta.pt")
        pid = registar_utilizador("rui@beta.pt", "Segredo123!", "Rui", company_id=outra)
        inv = criar_convite(rh, empresa, "rui@beta.pt")
        with pytest.raises(Conflito):
            resgatar_convite(Ator(id=pid, role=Papel.USER, email="rui@beta.pt", company_id=outra), inv["invite_code"])

    def test_codigo_inexistente(self, sem_empresa):
        with pytest.raises(NaoEncontrado):
            resgatar_convite(sem_empresa, "MS-ZZZZ")

    def test_convite_expirado_fica_marcado(self, rh, empresa, sem_empresa):
        inv = criar_convite(rh, empresa, "joao@acme.pt")
        depois = datetime.utcnow() + timedelta(days=31)
        with pytest.raises(PedidoInvalido):
            resgatar_convite(sem_empresa, inv["invite_code"], agora=depois)
        assert listar_convites(rh, empresa)[0]["status"] == "expired"

    def test_convite_cancelado(self, rh, empresa, sem_empresa):
        inv = criar_convite(rh, empresa, "joao@acme.pt")
        assert cancelar_convite(rh, inv["id"])["status"] == "cancelled"
        with pytest.raises(PedidoInvalido):
            resgatar_convite(sem_empresa, inv["invite_code"])
        with pytest.raises(PedidoInvalido):
            cancelar_convite(rh, inv["id"])

    def test_limite_de_lugares(self, admin, sem_empresa):
        cid = criar_empresa(admin, "Pequena", "rh@pequena.pt", sessions_allocated=10, seat_limit=1)
        registar_utilizador("um@pequena.pt", "Segredo123!", "Um", company_id=cid)
        inv = criar_convite(admin, cid, "joao@acme.pt")
        with pytest.raises(QuotaEmpresaExcedida):
            resgatar_convite(sem_empresa, inv["invite_code"])
        assert obter_perfil(sem_empresa.id).company_id is None


class TestRegistoComConvite:
    def test_cria_conta_ligada_a_empresa(self, rh, empresa):
        inv = criar_convite(rh, empresa, "joao@acme.pt", name="João Santos", sessions=3)
        res = registar_com_convite(inv["invite_code"], "Segredo123!")

        p = autenticar("joao@acme.pt", "Segredo123!")
        assert p is not None
        assert p.id == res["profile_id"]
        assert p.name == "João Santos"
        assert p.company_id == empresa
        assert res["role"] == "user"
        assert saldo_sessoes(p.id)["total_remaining"] == 3

    def test_password_curta(self, rh, empresa):
        inv = criar_convite(rh, empresa, "joao@acme.pt", name="João")
        with pytest.raises(PedidoInvalido):
            registar_com_convite(inv["invite_code"], "curta")

    def test_falha_nao_cria_perfil(self, rh, empresa, colaborador):
        inv = criar_convite(rh, empresa, "joao@acme.pt", name="João")
        with pytest.raises(Conflito):
            registar_com_convite(inv["invite_code"], "Segredo123!", email=colaborador.email)
        assert listar_convites(rh, empresa)[0]["status"] == "pending"


class TestExpiracaoEAdocao:
    def test_expirar_convites(self, rh, empresa):
        criar_convite(rh, empresa, "joao@acme.pt")
        criar_convite(rh, empresa, "rui@acme.pt")
        assert expirar_convites() == 0
        assert expirar_convites(datetime.utcnow() + timedelta(days=31)) == 2
        assert {c["status"] for c in listar_convites(rh, empresa)} == {"expired"}

    def test_adocao(self, rh, empresa, colaborador, sem_empresa):
        inv = criar_convite(rh, empresa, "joao@acme.pt")
        criar_convite(rh, empresa, "rui@acme.pt")
        resgatar_convite(sem_empresa, inv["invite_code"])

        ad = adocao_empresa(empresa)
        assert ad["invites_total"] == 2
        assert ad["invites"]["accepted"] == 1
        assert ad["invites"]["pending"] == 1
        assert ad["acceptance_rate"] == 50
        assert ad["employees"] == 2
        assert ad["adoption_rate"] == 0
