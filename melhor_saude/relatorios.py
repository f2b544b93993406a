from __future__ import annotations

import csv
import html
import io
from datetime import datetime

from sqlalchemy import func, select

from .db import db_session
from .errors import NaoEncontrado, PedidoInvalido
from .models import (
    Booking,
    BookingStatus,
    ChangeRequest,
    ChangeRequestStatus,
    Company,
    Feedback,
    Papel,
    Pilar,
    Prestador,
    Profile,
    SessionRequest,
    SessionRequestStatus,
    SessionUsage,
    UsageStatus,
)

MESES = [
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
]

NOMES_PILAR = {
    Pilar.SAUDE_MENTAL: "Saúde Mental",
    Pilar.BEM_ESTAR_FISICO: "Bem-estar Físico",
    Pilar.ASSISTENCIA_FINANCEIRA: "Assistência Financeira",
    Pilar.ASSISTENCIA_JURIDICA: "Assistência Jurídica",
}

# presença = confirmada ou concluída
PRESENCA = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


def janela_mes(ano: int, mes: int) -> tuple[datetime, datetime]:
    """[primeiro dia do mês, primeiro dia do mês seguinte)"""
    if not 1 <= mes <= 12:
        raise PedidoInvalido("Mês inválido (1-12).")
    inicio = datetime(ano, mes, 1)
    fim = datetime(ano + 1, 1, 1) if mes == 12 else datetime(ano, mes + 1, 1)
    return inicio, fim


def _pct(parte: int, total: int) -> int:
    return round(parte / total * 100) if total else 0


# =========================
# Relatório mensal
# =========================
def relatorio_mensal(ano: int, mes: int, company_id: str | None = None) -> dict:
    inicio, fim = janela_mes(ano, mes)

    with db_session() as s:
        empresa = None
        if company_id:
            empresa = s.get(Company, company_id)
            if not empresa:
                raise NaoEncontrado("Empresa não encontrada.")

        qu = select(Profile).where(Profile.is_active.is_(True), Profile.role == Papel.USER)
        if company_id:
            qu = qu.where(Profile.company_id == company_id)
        utilizadores = {p.id: p for p in s.scalars(qu)}

        marcacoes = []
        if utilizadores:
            marcacoes = list(
                s.scalars(
                    select(Booking)
                    .where(
                        Booking.user_id.in_(list(utilizadores)),
                        Booking.booking_date >= inicio,
                        Booking.booking_date < fim,
                    )
                    .order_by(Booking.booking_date.asc())
                )
            )

        por_pilar = {p.value: {"booked": 0, "attended": 0, "completed": 0} for p in Pilar}
        com_marcacao, presentes, concluidos = set(), set(), set()
        detalhe = []
        for b in marcacoes:
            com_marcacao.add(b.user_id)
            linha = por_pilar[b.pillar.value]
            linha["booked"] += 1
            if b.status in PRESENCA:
                presentes.add(b.user_id)
                linha["attended"] += 1
            if b.status == BookingStatus.COMPLETED:
                concluidos.add(b.user_id)
                linha["completed"] += 1

            u = utilizadores[b.user_id]
            detalhe.append(
                {
                    "date": b.booking_date.strftime("%Y-%m-%d %H:%M"),
                    "user_name": u.name,
                    "department": u.department,
                    "pillar": b.pillar.value,
                    "session_type": b.session_type.value,
                    "professional": b.prestador.name,
                    "duration": b.duration,
                    "status": b.status.value,
                }
            )

        total = len(utilizadores)
        return {
            "month": MESES[mes - 1],
            "month_number": mes,
            "year": ano,
            "period_start": inicio.date().isoformat(),
            "period_end": fim.date().isoformat(),
            "company_id": company_id,
            "company_name": empresa.name if empresa else None,
            "total_users": total,
            "users_with_bookings": len(com_marcacao),
            "users_attended": len(presentes),
            "users_completed": len(concluidos),
            "consultations_by_pillar": por_pilar,
            "employee_access_percentage": _pct(len(com_marcacao), total),
            "detailed": detalhe,
        }


# =========================
# Exportação
# =========================
def exportar_relatorio_csv(relatorio: dict) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    titulo = f"Relatório {relatorio['month']} {relatorio['year']}"
    if relatorio.get("company_name"):
        titulo += f" - {relatorio['company_name']}"
    w.writerow([titulo])
    w.writerow(["Utilizadores ativos", relatorio["total_users"]])
    w.writerow(["Utilizadores com marcações", relatorio["users_with_bookings"]])
    w.writerow(["Utilizadores presentes", relatorio["users_attended"]])
    w.writerow(["Utilizadores com sessões concluídas", relatorio["users_completed"]])
    w.writerow(["Taxa de acesso (%)", relatorio["employee_access_percentage"]])
    w.writerow([])
    w.writerow(["Pilar", "Marcadas", "Presenças", "Concluídas"])
    for pilar, v in relatorio["consultations_by_pillar"].items():
        w.writerow([NOMES_PILAR[Pilar(pilar)], v["booked"], v["attended"], v["completed"]])
    w.writerow([])
    w.writerow(["Data", "Utilizador", "Departamento", "Pilar", "Tipo", "Profissional", "Duração", "Estado"])
    for d in relatorio["detailed"]:
        w.writerow([
            d["date"], d["user_name"], d["department"] or "", NOMES_PILAR[Pilar(d["pillar"])],
            d["session_type"], d["professional"], d["duration"], d["status"],
        ])
    return buf.getvalue()


def exportar_relatorio_html(relatorio: dict) -> str:
    """Versão imprimível do relatório (HTML autónomo, sem recursos externos)."""
    e = html.escape
    titulo = f"Relatório {relatorio['month']} {relatorio['year']}"
    if relatorio.get("company_name"):
        titulo += f" - {relatorio['company_name']}"

    resumo = [
        ("Utilizadores ativos", relatorio["total_users"]),
        ("Utilizadores com marcações", relatorio["users_with_bookings"]),
        ("Utilizadores presentes", relatorio["users_attended"]),
        ("Utilizadores com sessões concluídas", relatorio["users_completed"]),
        ("Taxa de acesso", f"{relatorio['employee_access_percentage']}%"),
    ]
    linhas_resumo = "".join(f"<tr><th>{e(k)}</th><td>{e(str(v))}</td></tr>" for k, v in resumo)
    linhas_pilar = "".join(
        f"<tr><td>{e(NOMES_PILAR[Pilar(p)])}</td><td>{v['booked']}</td><td>{v['attended']}</td><td>{v['completed']}</td></tr>"
        for p, v in relatorio["consultations_by_pillar"].items()
    )
    linhas_detalhe = "".join(
        "<tr>"
        + "".join(
            f"<td>{e(str(x))}</td>"
            for x in (
                d["date"], d["user_name"], d["department"] or "", NOMES_PILAR[Pilar(d["pillar"])],
                d["professional"], d["duration"], d["status"],
            )
        )
        + "</tr>"
        for d in relatorio["detailed"]
    )

    return f"""<!DOCTYPE html>
<html lang="pt">
<head>
<meta charset="utf-8">
<title>{e(titulo)}</title>
<style>
body {{ font-family: sans-serif; margin: 2em; }}
table {{ border-collapse: collapse; margin-bottom: 1.5em; }}
th, td {{ border: 1px solid #ccc; padding: 4px 8px; text-align: left; }}
@media print {{ body {{ margin: 0; }} }}
</style>
</head>
<body>
<h1>{e(titulo)}</h1>
<h2>Resumo</h2>
<table>{linhas_resumo}</table>
<h2>Consultas por pilar</h2>
<table><tr><th>Pilar</th><th>Marcadas</th><th>Presenças</th><th>Concluídas</th></tr>{linhas_pilar}</table>
<h2>Detalhe</h2>
<table><tr><th>Data</th><th>Utilizador</th><th>Departamento</th><th>Pilar</th><th>Profissional</th><th>Duração</th><th>Estado</th></tr>{linhas_detalhe}</table>
</body>
</html>
"""


# =========================
# Visão geral (admin)
# =========================
def visao_geral_plataforma() -> dict:
    with db_session() as s:
        def contar(q) -> int:
            return s.execute(q).scalar_one()

        utilizadores_por_papel = {
            papel.value: n
            for papel, n in s.execute(
                select(Profile.role, func.count(Profile.id)).where(Profile.is_active.is_(True)).group_by(Profile.role)
            ).all()
        }
        marcacoes_por_estado = {
            st.value: n
            for st, n in s.execute(select(Booking.status, func.count(Booking.id)).group_by(Booking.status)).all()
        }
        marcacoes_por_pilar = {
            p.value: n
            for p, n in s.execute(select(Booking.pillar, func.count(Booking.id)).group_by(Booking.pillar)).all()
        }
        media = s.execute(select(func.avg(Feedback.rating))).scalar_one()

        return {
            "companies_active": contar(select(func.count(Company.id)).where(Company.is_active.is_(True))),
            "companies_total": contar(select(func.count(Company.id))),
            "users_by_role": utilizadores_por_papel,
            "prestadores_active": contar(
                select(func.count(Prestador.id)).where(Prestador.is_active.is_(True), Prestador.is_approved.is_(True))
            ),
            "prestadores_pending_approval": contar(
                select(func.count(Prestador.id)).where(Prestador.is_approved.is_(False))
            ),
            "bookings_by_status": marcacoes_por_estado,
            "bookings_by_pillar": marcacoes_por_pilar,
            "sessions_used": contar(
                select(func.count(SessionUsage.id)).where(SessionUsage.status == UsageStatus.USED)
            ),
            "pending_change_requests": contar(
                select(func.count(ChangeRequest.id)).where(ChangeRequest.status == ChangeRequestStatus.PENDING)
            ),
            "pending_session_requests": contar(
                select(func.count(SessionRequest.id)).where(SessionRequest.status == SessionRequestStatus.PENDING)
            ),
            "average_rating": round(float(media), 2) if media is not None else None,
        }
