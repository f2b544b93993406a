from __future__ import annotations

import argparse
import getpass
import json
import sys
from datetime import datetime
from pathlib import Path

from sqlalchemy import select

from .auth_service import Ator, ator_de, registar_utilizador
from .config import DEFAULT_INVITE_SESSIONS, LOG_DIR, LOG_LEVEL, REMINDER_HOURS
from .convites import convidar_em_lote, descodificar_csv, exportar_resultados_csv, expirar_convites
from .db import db_session, init_db
from .empresas import criar_empresa, listar_empresas, listar_prestadores, listar_utilizadores
from .errors import ErroAplicacao
from .logging_config import setup_logging
from .models import AllocationType, Papel, PlanType, Profile
from .notificacoes import extrair_notificacoes_pendentes, gerar_lembretes, marcar_notificacao_enviada
from .relatorios import exportar_relatorio_csv, exportar_relatorio_html, relatorio_mensal
from .seed import ADMIN_EMAIL, seed_base
from .sessoes import atribuir_sessoes


def _ator_admin(email: str) -> Ator:
    with db_session() as s:
        p = s.execute(select(Profile).where(Profile.email == email.strip().lower())).scalar_one_or_none()
        if not p or p.role != Papel.ADMIN:
            raise SystemExit(f"Administrador não encontrado: {email}")
        return ator_de(p)


def cmd_init(args: argparse.Namespace) -> None:
    seed_base()
    print("BD inicializada e seed concluído.")


def cmd_create_admin(args: argparse.Namespace) -> None:
    password = args.password or getpass.getpass("Password: ")
    pid = registar_utilizador(args.email, password, args.name, role=Papel.ADMIN)
    print(f"Administrador criado: {pid}")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "empresas":
        for c in listar_empresas(com_utilizadores=True):
            estado = "ativa" if c["is_active"] else "inativa"
            print(f"{c['id']} | {c['name']} | {c['sessions_used']}/{c['sessions_allocated']} sessões | {estado}")
    elif args.entity == "prestadores":
        for p in listar_prestadores(apenas_disponiveis=False):
            print(f"{p['id']} | {p['name']} | {p['pillar']} | aprovado={p['is_approved']}")
    elif args.entity == "utilizadores":
        for u in listar_utilizadores(company_id=args.company_id):
            print(f"{u['id']} | {u['email']} | {u['role']} | {u['company_id'] or '-'}")


def cmd_add_company(args: argparse.Namespace) -> None:
    ator = _ator_admin(args.admin)
    cid = criar_empresa(
        ator,
        name=args.name,
        contact_email=args.email,
        contact_phone=args.phone,
        plan_type=PlanType(args.plan),
        sessions_allocated=args.sessions,
        seat_limit=args.seats,
    )
    print(f"Empresa criada: {cid}")


def cmd_allocate(args: argparse.Namespace) -> None:
    ator = _ator_admin(args.admin)
    res = atribuir_sessoes(ator, args.profile_id, AllocationType(args.type), args.quantity, reason=args.reason)
    print(f"Alocação {res['id']}: {res['sessions_allocated']} sessões ({res['allocation_type']})")


def cmd_import_invites(args: argparse.Namespace) -> None:
    """
    Importa convites de um CSV (colunas: Nome, Email, Departamento, Cargo, Sessões).
    Os resultados são escritos em CSV no stdout ou em --output.
    """
    ator = _ator_admin(args.admin)
    texto = descodificar_csv(Path(args.file).read_bytes())
    resultados = convidar_em_lote(ator, args.company_id, texto, sessoes_padrao=args.sessions)
    saida = exportar_resultados_csv(resultados)
    if args.output:
        Path(args.output).write_text(saida, encoding="utf-8")
    else:
        sys.stdout.write(saida)
    ok = sum(1 for r in resultados if r.ok)
    print(f"{ok} convites criados, {len(resultados) - ok} com erro.", file=sys.stderr)


def cmd_expire_invites(args: argparse.Namespace) -> None:
    print(f"Convites expirados: {expirar_convites()}")


def cmd_reminders(args: argparse.Namespace) -> None:
    print(f"Lembretes gerados: {gerar_lembretes(horas=args.hours)}")


def cmd_notifications(args: argparse.Namespace) -> None:
    """
    Simula o serviço externo de envio:
    - lê as notificações pendentes
    - imprime-as na consola
    - marca-as como enviadas (com --mark-sent)
    """
    pendentes = extrair_notificacoes_pendentes(limit=args.limit)
    if not pendentes:
        print("Sem notificações pendentes.")
        return

    for n in pendentes:
        destino = n.recipient_email or n.recipient_id or "-"
        print(f"[{n.id}] {n.tipo.value} | {n.created_at.isoformat()} | {destino} | {n.title}")
        if args.mark_sent:
            marcar_notificacao_enviada(n.id)

    if args.mark_sent:
        print("Notificações marcadas como enviadas.")


def cmd_report(args: argparse.Namespace) -> None:
    rel = relatorio_mensal(args.year, args.month, company_id=args.company_id)
    if args.format == "json":
        saida = json.dumps(rel, ensure_ascii=False, indent=2)
    elif args.format == "html":
        saida = exportar_relatorio_html(rel)
    else:
        saida = exportar_relatorio_csv(rel)

    if args.output:
        Path(args.output).write_text(saida, encoding="utf-8")
        print(f"Relatório escrito em {args.output}")
    else:
        sys.stdout.write(saida)


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("melhor_saude.api_main:app", host=args.host, port=args.port, reload=args.reload)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="melhor-saude", description="CLI Melhor Saúde (administração e tarefas periódicas)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Cria a BD e carrega o seed")
    p_init.set_defaults(func=cmd_init)

    p_admin = sub.add_parser("create-admin", help="Cria um administrador")
    p_admin.add_argument("--email", required=True)
    p_admin.add_argument("--name", required=True)
    p_admin.add_argument("--password", default=None, help="Se omitida é pedida interativamente")
    p_admin.set_defaults(func=cmd_create_admin)

    p_list = sub.add_parser("list", help="Lista entidades")
    p_list.add_argument("entity", choices=["empresas", "prestadores", "utilizadores"])
    p_list.add_argument("--company-id", default=None)
    p_list.set_defaults(func=cmd_list)

    p_comp = sub.add_parser("add-company", help="Cria empresa")
    p_comp.add_argument("--name", required=True)
    p_comp.add_argument("--email", required=True)
    p_comp.add_argument("--phone", default=None)
    p_comp.add_argument("--plan", choices=[t.value for t in PlanType], default=PlanType.BASIC.value)
    p_comp.add_argument("--sessions", type=int, default=0)
    p_comp.add_argument("--seats", type=int, default=None)
    p_comp.add_argument("--admin", default=ADMIN_EMAIL, help="Email do administrador que executa")
    p_comp.set_defaults(func=cmd_add_company)

    p_alloc = sub.add_parser("allocate", help="Atribui sessões a um utilizador")
    p_alloc.add_argument("--profile-id", required=True)
    p_alloc.add_argument("--type", choices=[t.value for t in AllocationType], default=AllocationType.COMPANY.value)
    p_alloc.add_argument("--quantity", type=int, required=True)
    p_alloc.add_argument("--reason", default=None)
    p_alloc.add_argument("--admin", default=ADMIN_EMAIL)
    p_alloc.set_defaults(func=cmd_allocate)

    p_inv = sub.add_parser("import-invites", help="Convites em lote a partir de CSV")
    p_inv.add_argument("--company-id", required=True)
    p_inv.add_argument("--file", required=True)
    p_inv.add_argument(
        "--sessions", type=int, default=DEFAULT_INVITE_SESSIONS, help="Sessões por omissão quando a coluna está vazia"
    )
    p_inv.add_argument("--output", default=None)
    p_inv.add_argument("--admin", default=ADMIN_EMAIL)
    p_inv.set_defaults(func=cmd_import_invites)

    p_exp = sub.add_parser("expire-invites", help="Marca como expirados os convites fora de prazo")
    p_exp.set_defaults(func=cmd_expire_invites)

    p_rem = sub.add_parser("reminders", help="Gera lembretes das marcações próximas")
    p_rem.add_argument("--hours", type=int, default=REMINDER_HOURS)
    p_rem.set_defaults(func=cmd_reminders)

    p_not = sub.add_parser("notifications", help="Lê e envia notificações pendentes (simulação)")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-sent", action="store_true", help="Marca como enviadas depois de impressas")
    p_not.set_defaults(func=cmd_notifications)

    hoje = datetime.utcnow()
    p_rep = sub.add_parser("report", help="Relatório mensal")
    p_rep.add_argument("--year", type=int, default=hoje.year)
    p_rep.add_argument("--month", type=int, default=hoje.month)
    p_rep.add_argument("--company-id", default=None)
    p_rep.add_argument("--format", choices=["csv", "html", "json"], default="csv")
    p_rep.add_argument("--output", default=None)
    p_rep.set_defaults(func=cmd_report)

    p_serve = sub.add_parser("serve", help="Arranca a API (uvicorn)")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    return p


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(LOG_LEVEL, LOG_DIR)
    init_db()  # garante as tabelas
    try:
        args.func(args)
    except ErroAplicacao as e:
        print(f"Erro: {e.message}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
