"""Testes do CLI de administração e das ferramentas de manutenção."""
import json

import pytest

from melhor_saude.auth_service import autenticar
from melhor_saude.cli import main
from melhor_saude.tools import reset_user


@pytest.fixture
def seeded(capsys):
    main(["init"])
    capsys.readouterr()


class TestCli:
    def test_init_e_listar(self, seeded, capsys):
        main(["list", "empresas"])
        out = capsys.readouterr().out
        assert "Empresa Demo" in out
        assert "0/200 sessões" in out

        main(["list", "prestadores"])
        assert capsys.readouterr().out.count("aprovado=True") == 4

    def test_init_idempotente(self, seeded, capsys):
        main(["init"])
        main(["list", "empresas"])
        assert capsys.readouterr().out.count("Empresa Demo") == 1

    def test_criar_empresa(self, seeded, capsys):
        main(["add-company", "--name", "Beta", "--email", "rh@beta.pt", "--sessions", "30", "--plan", "enterprise"])
        assert "Empresa criada" in capsys.readouterr().out

        with pytest.raises(SystemExit) as exc:
            main(["add-company", "--name", "Beta", "--email", "rh@beta.pt"])
        assert exc.value.code == 1
        assert capsys.readouterr().err.startswith("Erro:")

    def test_admin_desconhecido(self, seeded):
        with pytest.raises(SystemExit):
            main(["add-company", "--name", "Beta", "--email", "rh@beta.pt", "--admin", "ninguem@acme.pt"])

    def test_relatorio_json(self, seeded, capsys):
        main(["report", "--year", "2025", "--month", "3", "--format", "json"])
        rel = json.loads(capsys.readouterr().out)
        assert rel["month"] == "março"
        assert rel["company_id"] is None

    def test_relatorio_para_ficheiro(self, seeded, capsys, tmp_path):
        destino = tmp_path / "rel.html"
        main(["report", "--year", "2025", "--month", "3", "--format", "html", "--output", str(destino)])
        assert destino.read_text(encoding="utf-8").startswith("<!DOCTYPE html>")

    def test_importar_convites(self, seeded, capsys, tmp_path):
        main(["list", "empresas"])
        company_id = capsys.readouterr().out.split(" | ")[0]
        ficheiro = tmp_path / "convites.csv"
        ficheiro.write_text("Nome,Email\nJoão,joao@demo.pt\n,\nRui,rui-invalido\n", encoding="utf-8")

        main(["import-invites", "--company-id", company_id, "--file", str(ficheiro)])
        cap = capsys.readouterr()
        assert cap.out.splitlines()[1].startswith("joao@demo.pt,Sucesso,MS-")
        assert "1 convites criados, 1 com erro." in cap.err

    def test_notificacoes(self, seeded, capsys):
        main(["notifications"])
        assert "Sem notificações pendentes." in capsys.readouterr().out


class TestResetUser:
    def test_reativa_com_password_temporaria(self, seeded, capsys, monkeypatch):
        monkeypatch.setattr("sys.argv", ["reset_user", "RH@empresademo.pt"])
        reset_user.main()
        password = capsys.readouterr().out.rsplit(": ", 1)[1].strip()
        assert autenticar("rh@empresademo.pt", password) is not None

    def test_utilizador_inexistente(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["reset_user", "ninguem@acme.pt"])
        with pytest.raises(SystemExit) as exc:
            reset_user.main()
        assert exc.value.code == 1
