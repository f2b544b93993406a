"""Testes de empresas, utilizadores das empresas e prestadores."""
from unittest.mock import patch

import pytest

from melhor_saude.administracao import listar_logs
from melhor_saude.auth_service import Ator, autenticar, obter_perfil, registar_utilizador
from melhor_saude.empresas import (
    alterar_estado_empresa,
    alterar_estado_prestador,
    alterar_estado_utilizador,
    atualizar_empresa,
    atualizar_quota_empresa,
    criar_empresa,
    criar_prestador,
    criar_utilizador_empresa,
    listar_empresas,
    listar_prestadores,
    listar_utilizadores,
    obter_empresa,
    prestador_do_perfil,
    resumo_empresa,
)
from melhor_saude.errors import Conflito, NaoEncontrado, PedidoInvalido, QuotaEmpresaExcedida, SemPermissao
from melhor_saude.models import AllocationType, Papel, Pilar, PlanType
from melhor_saude.sessoes import atribuir_sessoes


class TestEmpresas:
    def test_criar_empresa(self, admin):
        cid = criar_empresa(
            admin, "  Beta Lda ", "RH@Beta.pt", plan_type=PlanType.PREMIUM, sessions_allocated=50, seat_limit=20
        )
        c = obter_empresa(cid)
        assert c["name"] == "Beta Lda"
        assert c["contact_email"] == "rh@beta.pt"
        assert c["plan_type"] == "premium"
        assert c["sessions_allocated"] == 50
        assert c["is_active"] is True
        assert listar_logs("create_company")[0]["target_id"] == cid

    def test_so_admin(self, colaborador):
        with pytest.raises(SemPermissao):
            criar_empresa(colaborador, "Beta", "rh@beta.pt")

    def test_nome_duplicado(self, admin, empresa):
        with pytest.raises(Conflito):
            criar_empresa(admin, "Acme", "outro@acme.pt")

    def test_email_invalido(self, admin):
        with pytest.raises(PedidoInvalido):
            criar_empresa(admin, "Beta", "nao-e-email")

    def test_valores_negativos(self, admin):
        with pytest.raises(PedidoInvalido):
            criar_empresa(admin, "Beta", "rh@beta.pt", sessions_allocated=-1)

    def test_empresa_inexistente(self):
        with pytest.raises(NaoEncontrado):
            obter_empresa("nao-existe")

    def test_atualizar_empresa(self, admin, empresa):
        res = atualizar_empresa(admin, empresa, contact_phone="+351 210 000 000", plan_type="enterprise")
        assert res["contact_phone"] == "+351 210 000 000"
        assert res["plan_type"] == "enterprise"

    def test_atualizar_campo_desconhecido(self, admin, empresa):
        with pytest.raises(PedidoInvalido):
            atualizar_empresa(admin, empresa, sessions_used=0)

    def test_atualizar_nome_duplicado(self, admin, empresa):
        criar_empresa(admin, "Beta", "rh@beta.pt")
        with pytest.raises(Conflito):
            atualizar_empresa(admin, empresa, name="Beta")

    def test_listar_com_utilizadores(self, admin, empresa, colaborador, rh):
        empresas = listar_empresas(com_utilizadores=True)
        assert [e["name"] for e in empresas] == ["Acme"]
        assert {u["email"] for u in empresas[0]["users"]} == {"ana@acme.pt", "rh@acme.pt"}


class TestEstadoEmpresa:
    """Desativar a empresa desativa todos os perfis na mesma transação."""

    def test_desativar_e_reativar(self, admin, empresa, colaborador, rh):
        res = alterar_estado_empresa(admin, empresa, False)
        assert res == {"company_id": empresa, "is_active": False, "users_affected": 2}
        assert autenticar("ana@acme.pt", "Segredo123!") is None
        assert obter_perfil(rh.id).is_active is False

        log = listar_logs("disable_company")[0]
        assert log["details"]["users_affected"] == 2
        assert log["admin_id"] == admin.id

        alterar_estado_empresa(admin, empresa, True)
        assert autenticar("ana@acme.pt", "Segredo123!") is not None
        assert listar_logs("enable_company")

    def test_falha_a_meio_reverte_tudo(self, admin, empresa, colaborador, rh):
        with patch("melhor_saude.empresas.registar_acao", side_effect=RuntimeError("falha no registo")):
            with pytest.raises(RuntimeError):
                alterar_estado_empresa(admin, empresa, False)
        assert obter_empresa(empresa)["is_active"] is True
        assert obter_perfil(colaborador.id).is_active is True
        assert obter_perfil(rh.id).is_active is True
        assert listar_logs("disable_company") == []

    def test_outros_perfis_nao_afetados(self, admin, empresa, colaborador):
        fora = registar_utilizador("fora@beta.pt", "Segredo123!", "Fora")
        alterar_estado_empresa(admin, empresa, False)
        assert obter_perfil(fora).is_active is True

    def test_so_admin(self, rh, empresa):
        with pytest.raises(SemPermissao):
            alterar_estado_empresa(rh, empresa, False)


class TestQuotaEmpresa:
    def test_pool_abaixo_do_distribuido(self, admin, empresa, colaborador):
        atribuir_sessoes(admin, colaborador.id, AllocationType.COMPANY, 30)
        with pytest.raises(PedidoInvalido):
            atualizar_quota_empresa(admin, empresa, sessions_allocated=20)
        res = atualizar_quota_empresa(admin, empresa, sessions_allocated=30)
        assert res["sessions_allocated"] == 30

    def test_lugares_abaixo_dos_colaboradores(self, admin, empresa, colaborador):
        with pytest.raises(PedidoInvalido):
            atualizar_quota_empresa(admin, empresa, seat_limit=0)
        assert atualizar_quota_empresa(admin, empresa, seat_limit=1)["seat_limit"] == 1

    def test_resumo(self, admin, empresa, colaborador, rh):
        atribuir_sessoes(admin, colaborador.id, AllocationType.COMPANY, 10)
        r = resumo_empresa(empresa)
        assert r["sessions_allocated"] == 100
        assert r["sessions_distributed"] == 10
        assert r["sessions_undistributed"] == 90
        assert r["sessions_used"] == 0
        assert r["employees"] == 1
        assert r["seat_limit"] == 10


class TestUtilizadoresEmpresa:
    def test_rh_cria_colaborador(self, rh, empresa):
        u = criar_utilizador_empresa(rh, "joao@acme.pt", "João Santos", department="Comercial")
        assert u["company_id"] == empresa
        assert u["role"] == "user"
        assert u["department"] == "Comercial"
        assert autenticar("joao@acme.pt", u["temporary_password"]) is not None

    def test_rh_nao_cria_para_outra_empresa(self, admin, rh):
        outra = criar_empresa(admin, "Beta", "rh@beta.pt")
        with pytest.raises(SemPermissao):
            criar_utilizador_empresa(rh, "joao@beta.pt", "João", company_id=outra)

    def test_rh_sem_empresa_nao_gere_ninguem(self, admin):
        sem_empresa = registar_utilizador("rh@solto.pt", "Segredo123!", "RH Solto", Papel.HR)
        ator = Ator(id=sem_empresa, role=Papel.HR, email="rh@solto.pt")
        orfao = registar_utilizador("orfao@solto.pt", "Segredo123!", "Sem Empresa")
        with pytest.raises(SemPermissao):
            criar_utilizador_empresa(ator, "novo@solto.pt", "Novo")
        with pytest.raises(SemPermissao):
            alterar_estado_utilizador(ator, orfao, False)
        assert obter_perfil(orfao).is_active is True

    def test_rh_nao_cria_admins(self, rh):
        with pytest.raises(SemPermissao):
            criar_utilizador_empresa(rh, "chefe@acme.pt", "Chefe", role=Papel.ADMIN)

    def test_limite_de_lugares(self, admin):
        cid = criar_empresa(admin, "Pequena", "rh@pequena.pt", seat_limit=1)
        criar_utilizador_empresa(admin, "um@pequena.pt", "Um", company_id=cid)
        with pytest.raises(QuotaEmpresaExcedida):
            criar_utilizador_empresa(admin, "dois@pequena.pt", "Dois", company_id=cid)
        # RH não ocupa lugar
        hr = criar_utilizador_empresa(admin, "rh@pequena.pt", "RH", role=Papel.HR, company_id=cid)
        assert hr["role"] == "hr"

    def test_empresa_inativa(self, admin, empresa):
        alterar_estado_empresa(admin, empresa, False)
        with pytest.raises(PedidoInvalido):
            criar_utilizador_empresa(admin, "joao@acme.pt", "João", company_id=empresa)

    def test_desativar_utilizador(self, rh, colaborador):
        res = alterar_estado_utilizador(rh, colaborador.id, False)
        assert res["is_active"] is False
        assert autenticar("ana@acme.pt", "Segredo123!") is None

    def test_nao_desativa_a_propria_conta(self, admin):
        with pytest.raises(PedidoInvalido):
            alterar_estado_utilizador(admin, admin.id, False)

    def test_listar_utilizadores(self, empresa, colaborador, rh):
        todos = listar_utilizadores(company_id=empresa)
        assert len(todos) == 2
        so_users = listar_utilizadores(company_id=empresa, role=Papel.USER)
        assert [u["email"] for u in so_users] == ["ana@acme.pt"]


class TestPrestadores:
    def test_criar_prestador(self, admin, prestador):
        assert prestador["pillar"] == "saude_mental"
        assert prestador["specialties"] == ["ansiedade"]
        assert prestador["is_approved"] is True
        assert obter_perfil(prestador["profile_id"]).role == Papel.PRESTADOR
        assert prestador_do_perfil(prestador["profile_id"])["id"] == prestador["id"]
        assert autenticar(prestador["email"], prestador["temporary_password"]) is not None

    def test_listar_por_pilar(self, admin, prestador):
        criar_prestador(admin, "Dr. Rui Almeida", "rui@melhorsaude.pt", Pilar.BEM_ESTAR_FISICO)
        criar_prestador(admin, "Dra. Inês", "ines@melhorsaude.pt", Pilar.SAUDE_MENTAL, is_approved=False)

        mentais = listar_prestadores(Pilar.SAUDE_MENTAL)
        assert [p["id"] for p in mentais] == [prestador["id"]]
        assert len(listar_prestadores(Pilar.SAUDE_MENTAL, apenas_disponiveis=False)) == 2
        assert len(listar_prestadores()) == 2

    def test_aprovar_prestador(self, admin):
        p = criar_prestador(admin, "Dra. Inês", "ines@melhorsaude.pt", Pilar.ASSISTENCIA_JURIDICA, is_approved=False)
        res = alterar_estado_prestador(admin, p["id"], is_approved=True)
        assert res["is_approved"] is True
        assert listar_logs("update_prestador_status")[0]["details"] == {"is_approved": True}

    def test_desativar_prestador_desativa_perfil(self, admin, prestador):
        alterar_estado_prestador(admin, prestador["id"], is_active=False)
        assert obter_perfil(prestador["profile_id"]).is_active is False
