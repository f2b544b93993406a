from __future__ import annotations

import logging

from sqlalchemy import select

from .auth_service import criar_perfil
from .db import db_session
from .models import Company, Papel, Pilar, PlanType, Prestador, Profile

logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@melhorsaude.pt"
PASSWORD_DEMO = "MelhorSaude2024!"


def seed_base() -> None:
    """
    Dados mínimos para desenvolvimento (idempotente):
    - empresa de demonstração com pool de sessões
    - um prestador aprovado por pilar
    - administrador da plataforma
    - uma conta de RH da empresa de demonstração
    """
    with db_session() as s:
        if not s.execute(select(Profile.id).where(Profile.email == ADMIN_EMAIL)).first():
            criar_perfil(s, ADMIN_EMAIL, PASSWORD_DEMO, "Administrador", Papel.ADMIN)

        empresa = s.execute(select(Company).where(Company.name == "Empresa Demo")).scalar_one_or_none()
        if empresa is None:
            empresa = Company(
                name="Empresa Demo",
                contact_email="rh@empresademo.pt",
                plan_type=PlanType.PREMIUM,
                sessions_allocated=200,
                seat_limit=50,
            )
            s.add(empresa)
            s.flush()

        prestadores = [
            ("Dra. Marta Lopes", "marta.lopes@melhorsaude.pt", Pilar.SAUDE_MENTAL, ["ansiedade", "burnout"]),
            ("Dr. Rui Almeida", "rui.almeida@melhorsaude.pt", Pilar.BEM_ESTAR_FISICO, ["nutricao", "sono"]),
            ("Dra. Inês Carvalho", "ines.carvalho@melhorsaude.pt", Pilar.ASSISTENCIA_FINANCEIRA, ["dividas", "orcamento"]),
            ("Dr. Tiago Ferreira", "tiago.ferreira@melhorsaude.pt", Pilar.ASSISTENCIA_JURIDICA, ["trabalho", "habitacao"]),
        ]
        for nome, email, pilar, especialidades in prestadores:
            if s.execute(select(Profile.id).where(Profile.email == email)).first():
                continue
            perfil = criar_perfil(s, email, PASSWORD_DEMO, nome, Papel.PRESTADOR)
            s.add(
                Prestador(
                    profile_id=perfil.id,
                    name=nome,
                    email=email,
                    pillar=pilar,
                    specialties=especialidades,
                    is_approved=True,
                )
            )

        if not s.execute(select(Profile.id).where(Profile.email == "rh@empresademo.pt")).first():
            criar_perfil(s, "rh@empresademo.pt", PASSWORD_DEMO, "RH Empresa Demo", Papel.HR, company_id=empresa.id)

    logger.info("Seed concluído")
