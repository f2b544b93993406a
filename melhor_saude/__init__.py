"""
Backend applicativo Melhor Saúde.

Estrutura:
- config.py         : configuração via variáveis de ambiente (.env)
- db.py             : engine e sessões SQLAlchemy
- models.py         : modelos ORM e enums
- auth_*.py         : perfis, hashing de passwords, JWT
- empresas.py       : empresas, utilizadores e prestadores (admin)
- sessoes.py        : atribuição, dedução e reembolso de sessões
- marcacoes.py      : marcações, agenda e feedback
- convites.py       : convites de colaboradores, CSV, adoção (RH)
- relatorios.py     : relatórios mensais e exportação
- avaliacao.py      : avaliação guiada, chat IA, pedidos de sessão humana
- ai_gateway.py     : cliente HTTP do gateway de IA
- administracao.py  : pedidos de alteração, logs admin, casos
- notificacoes.py   : outbox de notificações e lembretes
- seed.py           : dados iniciais
- cli.py            : simulação de sistemas externos via CLI
- api_main.py       : API REST (FastAPI)
- client.py         : cliente HTTP da API (usado pelo dashboard Streamlit)
- tools/            : utilitários de manutenção (caminho da BD, reset de password)
"""
