from __future__ import annotations

from melhor_saude.config import APP_ENV
from melhor_saude.db import engine


def main() -> None:
    print("ENGINE URL:", engine.url.render_as_string(hide_password=True))
    print("DB FILE   :", engine.url.database)
    print("APP_ENV   :", APP_ENV)


if __name__ == "__main__":
    main()
