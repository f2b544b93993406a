from __future__ import annotations

import sys

from sqlalchemy import select

from melhor_saude.auth_security import hash_password
from melhor_saude.auth_service import gerar_password_temporaria, normalizar_email
from melhor_saude.db import db_session
from melhor_saude.models import Profile


def main() -> None:
    if len(sys.argv) < 2:
        print("Uso: python -m melhor_saude.tools.reset_user <email>")
        raise SystemExit(2)

    email = normalizar_email(sys.argv[1])
    if not email:
        print("Email inválido.")
        raise SystemExit(2)

    password = gerar_password_temporaria()
    with db_session() as s:
        p = s.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
        if not p:
            print(f"Utilizador '{email}' não existe.")
            raise SystemExit(1)
        p.password_hash = hash_password(password)
        p.is_active = True

    print(f"OK: '{email}' reativado com password temporária: {password}")


if __name__ == "__main__":
    main()
