from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from .ai_gateway import ClienteIA
from .auth_service import Ator, exigir_papel
from .db import db_session
from .errors import NaoEncontrado, PedidoInvalido, SemPermissao
from .marcacoes import criar_marcacao_em, marcacao_flat
from .models import (
    Assessment,
    AssessmentOutcome,
    ChatMessage,
    ChatSession,
    ChatStatus,
    NotificationType,
    Papel,
    Pilar,
    Prestador,
    Profile,
    SessionRequest,
    SessionRequestStatus,
)
from .notificacoes import enfileirar

logger = logging.getLogger(__name__)

MAX_MENSAGEM = 10000
MAX_HISTORICO = 40


# =========================
# Catálogo de temas
# =========================
CATALOGO: dict[Pilar, dict] = {
    Pilar.SAUDE_MENTAL: {
        "title": "Saúde Mental",
        "topics": [
            ("ansiedade", "Ansiedade", "Preocupação excessiva, nervosismo, tensão constante"),
            ("depressao", "Depressão", "Tristeza profunda, falta de motivação, isolamento"),
            ("estresse", "Stress", "Pressão no trabalho, sobrecarga"),
            ("burnout", "Burnout / Esgotamento", "Esgotamento profissional, exaustão emocional"),
            ("ansiedade-social", "Ansiedade Social / Fobias", "Medo de situações sociais, fobias específicas"),
            ("transtornos-alimentares", "Perturbações Alimentares", "Relação difícil com a comida e a imagem corporal"),
            ("relacionamento", "Dificuldades de Relacionamento", "Conflitos familiares ou amorosos, isolamento social"),
            ("autoestima", "Autoestima e Autoconfiança", "Insegurança, autocrítica"),
            ("luto", "Luto e Perda", "Processar perdas"),
            ("trauma", "Trauma e PTSD", "Experiências traumáticas, stress pós-traumático"),
            ("identidade", "Questões de Identidade", "Orientação sexual, identidade de género, autoconhecimento"),
            ("raiva", "Gestão da Raiva", "Controlar impulsos, gerir emoções intensas"),
        ],
        "symptoms": [
            "insonia", "cansaco", "irritabilidade", "falta-de-concentracao", "tristeza",
            "preocupacao-constante", "isolamento", "ataques-de-panico",
        ],
    },
    Pilar.BEM_ESTAR_FISICO: {
        "title": "Bem-estar Físico",
        "topics": [
            ("exercicio", "Atividade Física", "Rotina de exercício, condição física"),
            ("nutricao", "Nutrição e Alimentação", "Hábitos alimentares, dieta equilibrada"),
            ("sono", "Qualidade do Sono", "Dificuldade em dormir, rotina de sono"),
            ("peso", "Gestão de Peso", "Perda ou ganho de peso, manutenção"),
            ("dor-cronica", "Dor Crónica", "Dores persistentes, desconforto contínuo"),
            ("energia", "Níveis de Energia", "Fadiga constante, falta de disposição"),
            ("postura", "Postura e Mobilidade", "Problemas posturais, flexibilidade"),
            ("habitos", "Hábitos Prejudiciais", "Tabaco, álcool, sedentarismo"),
        ],
        "symptoms": ["dores-costas", "fadiga", "sedentarismo", "alimentacao-irregular", "sono-irregular", "dores-cabeca"],
    },
    Pilar.ASSISTENCIA_FINANCEIRA: {
        "title": "Assistência Financeira",
        "topics": [
            ("orcamento", "Orçamento Pessoal", "Gestão de receitas e despesas mensais"),
            ("dividas", "Gestão de Dívidas", "Créditos, empréstimos, dívidas acumuladas"),
            ("poupanca", "Poupança e Investimentos", "Fundo de emergência, investir melhor"),
            ("planejamento", "Planeamento Financeiro", "Objetivos a médio e longo prazo"),
            ("reforma", "Planeamento da Reforma", "Preparação para a reforma"),
            ("credito", "Acesso a Crédito", "Financiamentos, cartões de crédito"),
            ("emergencia", "Situação de Emergência", "Dificuldades financeiras urgentes"),
            ("educacao", "Literacia Financeira", "Aprender a gerir melhor o dinheiro"),
        ],
        "symptoms": ["despesas-acima-rendimento", "atraso-pagamentos", "sem-poupanca", "stress-financeiro", "multiplos-creditos"],
    },
    Pilar.ASSISTENCIA_JURIDICA: {
        "title": "Assistência Jurídica",
        "topics": [
            ("trabalho", "Direito do Trabalho", "Contratos, despedimentos, direitos laborais"),
            ("familia", "Direito da Família", "Divórcio, responsabilidades parentais, pensões de alimentos"),
            ("habitacao", "Habitação", "Arrendamento, despejo, conflitos com o senhorio"),
            ("consumidor", "Direito do Consumidor", "Produtos defeituosos, cláusulas abusivas"),
            ("divida", "Dívidas e Insolvência", "Processos de cobrança, insolvência pessoal"),
            ("imigracao", "Imigração e Vistos", "Autorização de residência, nacionalidade, documentação"),
            ("criminal", "Direito Penal", "Processos-crime, defesa"),
            ("contratos", "Contratos e Negócios", "Revisão de contratos, acordos comerciais"),
        ],
        "symptoms": ["prazo-a-decorrer", "notificacao-recebida", "conflito-ativo", "documentacao-em-falta", "processo-em-tribunal"],
    },
}


def catalogo() -> list[dict]:
    return [
        {
            "pillar": pilar.value,
            "title": info["title"],
            "topics": [{"id": t, "title": titulo, "subtitle": sub} for t, titulo, sub in info["topics"]],
            "symptoms": list(info["symptoms"]),
        }
        for pilar, info in CATALOGO.items()
    ]


def titulo_topico(pilar: Pilar, topic: str) -> str | None:
    for t, titulo, _ in CATALOGO[pilar]["topics"]:
        if t == topic:
            return titulo
    return None


# =========================
# Assistente por regras
# =========================
PALAVRAS_URGENTES = ["urgente", "emergência", "ajuda imediata", "crise", "suicídio", "perigo"]
PALAVRAS_HUMANO = ["falar com alguém", "atendente", "pessoa real", "humano", "pessoa", "especialista"]


@dataclass(frozen=True)
class RespostaAssistente:
    message: str
    confidence: float
    suggest_escalation: bool


def responder_por_regras(mensagem: str, pilar: Pilar | None = None) -> RespostaAssistente:
    """Respostas pré-definidas; pedidos urgentes ou de contacto humano sugerem escalamento."""
    m = (mensagem or "").lower()

    if any(k in m for k in PALAVRAS_URGENTES):
        return RespostaAssistente(
            "Compreendo que é urgente. Em situações de emergência é importante falar já com um especialista. "
            "Se estiver em perigo imediato ligue 112. Posso encaminhá-lo agora para um profissional. Deseja continuar?",
            0.2,
            True,
        )
    if any(k in m for k in PALAVRAS_HUMANO):
        return RespostaAssistente(
            "Claro! Posso encaminhá-lo para um dos nossos especialistas. Deseja que faça o pedido?",
            0.3,
            True,
        )

    quer_marcar = "agendar" in m or "marcar" in m
    if pilar == Pilar.SAUDE_MENTAL or any(k in m for k in ("stress", "ansiedade", "depressão")):
        if quer_marcar:
            return RespostaAssistente(
                "Para marcar uma sessão com um psicólogo use a opção 'Marcar Sessão' no seu painel, "
                "onde pode escolher o profissional e o horário. Posso ajudar em mais alguma coisa?",
                0.85,
                False,
            )
        return RespostaAssistente(
            "Compreendo a sua preocupação. Temos apoio psicológico profissional: pode marcar uma sessão "
            "ou continuar a conversa para organizarmos o que sente. Como prefere avançar?",
            0.75,
            False,
        )
    if pilar == Pilar.BEM_ESTAR_FISICO or any(k in m for k in ("físic", "médic", "dor")):
        return RespostaAssistente(
            "Para questões de bem-estar físico pode marcar uma sessão com os nossos profissionais em 'Marcar Sessão'. "
            "Se for uma situação urgente, contacte um serviço de urgência.",
            0.8,
            False,
        )
    if pilar == Pilar.ASSISTENCIA_JURIDICA or any(k in m for k in ("juríd", "legal", "direito")):
        return RespostaAssistente(
            "Temos apoio jurídico especializado. Pode marcar uma sessão com um dos nossos juristas, "
            "que o orientará sobre a sua questão.",
            0.8,
            False,
        )
    if pilar == Pilar.ASSISTENCIA_FINANCEIRA or any(k in m for k in ("financ", "dinheiro", "orçamento")):
        return RespostaAssistente(
            "Os nossos consultores financeiros ajudam com orçamento, dívidas e planeamento. Deseja marcar uma sessão?",
            0.8,
            False,
        )
    if any(k in m for k in ("login", "acesso", "senha", "password")):
        return RespostaAssistente(
            "Para problemas de acesso:\n- confirme que usa o email correto\n- use a recuperação de password\n"
            "- verifique se o convite foi aceite\nSe o problema continuar, posso encaminhar para o suporte.",
            0.85,
            False,
        )
    if quer_marcar or "sessão" in m or "consulta" in m:
        return RespostaAssistente(
            "Para marcar uma sessão:\n1. Abra 'Marcar Sessão'\n2. Escolha o pilar\n"
            "3. Selecione o profissional e o horário\n4. Confirme a marcação",
            0.9,
            False,
        )
    if any(k in m for k in ("olá", "bom dia", "boa tarde", "boa noite")):
        return RespostaAssistente(
            "Olá! Sou o assistente virtual da Melhor Saúde. Posso ajudar com marcações, "
            "informação sobre os serviços e dúvidas sobre a plataforma. Como posso ajudar?",
            1.0,
            False,
        )
    return RespostaAssistente(
        "Obrigado pela sua mensagem. Posso ajudar a marcar sessões de apoio psicológico, físico, jurídico "
        "ou financeiro, e a esclarecer dúvidas sobre a plataforma. Pode dar mais detalhes?",
        0.5,
        False,
    )


def prompt_sistema(pilar: Pilar, topic: str | None, context: str | None = None) -> str:
    area = CATALOGO[pilar]["title"]
    tema = (titulo_topico(pilar, topic) or topic) if topic else "não indicado"
    texto = (
        f"És um assistente de bem-estar, empático e profissional, especializado em {area}.\n"
        f"O utilizador escolheu o tema \"{tema}\".\n"
    )
    if context:
        texto += f"\nContexto indicado pelo utilizador:\n{context}\n"
    texto += (
        "\nO teu papel:\n"
        "1. Ouvir com empatia a situação do utilizador\n"
        "2. Fazer perguntas para perceber melhor as necessidades\n"
        "3. Dar orientação construtiva e de apoio\n"
        "4. Ajudar a pessoa a descrever claramente as suas preocupações\n"
        "5. Responder de forma concisa (2 a 3 parágrafos no máximo)\n"
        "\nNão fazes terapia nem dás aconselhamento médico: preparas a pessoa para a sessão com um especialista."
    )
    return texto


# =========================
# Avaliação
# =========================
def _avaliacao_do_ator(s, ator: Ator, assessment_id: str) -> Assessment:
    a = s.get(Assessment, assessment_id)
    if not a:
        raise NaoEncontrado("Avaliação não encontrada.")
    if a.profile_id != ator.id:
        raise SemPermissao("Sem acesso a esta avaliação.")
    return a


def iniciar_avaliacao(
    ator: Ator,
    pillar: Pilar,
    topic: str,
    symptoms: list[str] | None = None,
    context: str | None = None,
) -> dict:
    if titulo_topico(pillar, topic) is None:
        raise PedidoInvalido(f"Tema desconhecido para {pillar.value}: {topic}")
    symptoms = list(dict.fromkeys(symptoms or []))
    desconhecidos = [x for x in symptoms if x not in CATALOGO[pillar]["symptoms"]]
    if desconhecidos:
        raise PedidoInvalido(f"Sintomas desconhecidos: {', '.join(desconhecidos)}")
    if context and len(context) > 2000:
        raise PedidoInvalido("O contexto não pode exceder 2000 caracteres.")

    with db_session() as s:
        a = Assessment(profile_id=ator.id, pillar=pillar, topic=topic, symptoms=symptoms, context=context)
        s.add(a)
        s.flush()
        return {
            "id": a.id,
            "pillar": pillar.value,
            "topic": topic,
            "symptoms": symptoms,
            "outcome": a.outcome.value,
        }


# =========================
# Chat
# =========================
def _chat_do_ator(s, ator: Ator, session_id: str) -> ChatSession:
    c = s.get(ChatSession, session_id)
    if not c:
        raise NaoEncontrado("Conversa não encontrada.")
    if c.profile_id != ator.id and not ator.is_admin:
        raise SemPermissao("Sem acesso a esta conversa.")
    return c


def iniciar_chat(ator: Ator, assessment_id: str | None = None, pillar: Pilar | None = None) -> dict:
    with db_session() as s:
        assessment = None
        if assessment_id:
            assessment = _avaliacao_do_ator(s, ator, assessment_id)
            assessment.outcome = AssessmentOutcome.AI_CHAT
            pillar = assessment.pillar

        chat = ChatSession(profile_id=ator.id, assessment_id=assessment_id, pillar=pillar, status=ChatStatus.ACTIVE)
        s.add(chat)
        s.flush()

        if assessment:
            saudacao = (
                f"Olá! Vamos falar sobre {titulo_topico(assessment.pillar, assessment.topic)}. "
                "Conte-me um pouco mais sobre o que está a sentir."
            )
        else:
            saudacao = "Olá! Sou o assistente da Melhor Saúde. Em que posso ajudar?"
        s.add(ChatMessage(session_id=chat.id, role="assistant", content=saudacao, message_metadata={"source": "system"}))
        return {
            "id": chat.id,
            "assessment_id": assessment_id,
            "pillar": pillar.value if pillar else None,
            "status": chat.status.value,
            "greeting": saudacao,
        }


def enviar_mensagem(ator: Ator, session_id: str, content: str, cliente_ia: ClienteIA | None = None) -> dict:
    """
    Guarda a mensagem do utilizador e a resposta do assistente.
    - pedidos urgentes / de contacto humano: resposta fixa e conversa marcada para escalamento
    - IA configurada: resposta do gateway com o histórico da conversa
    - sem IA: assistente por regras
    """
    content = (content or "").strip()
    if not content:
        raise PedidoInvalido("A mensagem não pode estar vazia.")
    if len(content) > MAX_MENSAGEM:
        raise PedidoInvalido(f"A mensagem não pode exceder {MAX_MENSAGEM} caracteres.")
    cliente_ia = cliente_ia or ClienteIA()

    with db_session() as s:
        chat = _chat_do_ator(s, ator, session_id)
        if chat.status in (ChatStatus.RESOLVED, ChatStatus.CLOSED):
            raise PedidoInvalido("A conversa já terminou.")

        historico = [{"role": m.role, "content": m.content} for m in chat.messages][-MAX_HISTORICO:]
        s.add(ChatMessage(session_id=chat.id, role="user", content=content))

        regras = responder_por_regras(content, chat.pillar)
        if regras.suggest_escalation:
            resposta, confianca, origem = regras.message, regras.confidence, "rules"
            if chat.status == ChatStatus.ACTIVE:
                chat.status = ChatStatus.NEEDS_ESCALATION
            logger.info("Conversa %s marcada para escalamento", chat.id)
        elif cliente_ia.configurado and chat.pillar is not None:
            a = chat.assessment
            sistema = prompt_sistema(chat.pillar, a.topic if a else None, a.context if a else None)
            mensagens = [{"role": "system", "content": sistema}, *historico, {"role": "user", "content": content}]
            resposta, confianca, origem = cliente_ia.completar(mensagens), None, "ai"
        else:
            resposta, confianca, origem = regras.message, regras.confidence, "rules"

        meta = {"confidence": confianca, "source": origem, "pillar": chat.pillar.value if chat.pillar else None}
        s.add(ChatMessage(session_id=chat.id, role="assistant", content=resposta, message_metadata=meta))
        return {
            "reply": resposta,
            "confidence": confianca,
            "source": origem,
            "suggest_escalation": regras.suggest_escalation,
            "status": chat.status.value,
        }


def historico_chat(ator: Ator, session_id: str) -> list[dict]:
    with db_session() as s:
        chat = _chat_do_ator(s, ator, session_id)
        return [
            {"role": m.role, "content": m.content, "created_at": m.created_at.isoformat(), "metadata": m.message_metadata}
            for m in chat.messages
        ]


def terminar_chat(ator: Ator, session_id: str, resolved: bool = True, rating: int | None = None) -> dict:
    if rating is not None and not 1 <= rating <= 5:
        raise PedidoInvalido("A avaliação deve estar entre 1 e 5.")
    with db_session() as s:
        chat = _chat_do_ator(s, ator, session_id)
        if chat.status in (ChatStatus.RESOLVED, ChatStatus.CLOSED):
            raise PedidoInvalido("A conversa já terminou.")
        chat.status = ChatStatus.RESOLVED if resolved else ChatStatus.CLOSED
        chat.satisfaction_rating = rating
        chat.ended_at = datetime.utcnow()
        return {"id": chat.id, "status": chat.status.value, "satisfaction_rating": rating}


# =========================
# Pedidos de sessão humana
# =========================
def pedido_flat(r: SessionRequest) -> dict:
    return {
        "id": r.id,
        "profile_id": r.profile_id,
        "assessment_id": r.assessment_id,
        "chat_session_id": r.chat_session_id,
        "pillar": r.pillar.value,
        "notes": r.notes,
        "status": r.status.value,
        "booking_id": r.booking_id,
        "created_at": r.created_at.isoformat(),
    }


def pedir_sessao_humana(
    ator: Ator,
    assessment_id: str | None = None,
    chat_session_id: str | None = None,
    notes: str | None = None,
    pillar: Pilar | None = None,
) -> dict:
    with db_session() as s:
        if assessment_id:
            a = _avaliacao_do_ator(s, ator, assessment_id)
            a.outcome = AssessmentOutcome.HUMAN_REQUEST
            pillar = a.pillar
        if chat_session_id:
            chat = _chat_do_ator(s, ator, chat_session_id)
            chat.status = ChatStatus.ESCALATED
            pillar = pillar or chat.pillar
            if assessment_id is None and chat.assessment_id:
                assessment_id = chat.assessment_id
                chat.assessment.outcome = AssessmentOutcome.HUMAN_REQUEST
        if pillar is None:
            raise PedidoInvalido("Indique o pilar do pedido.")

        r = SessionRequest(
            profile_id=ator.id,
            assessment_id=assessment_id,
            chat_session_id=chat_session_id,
            pillar=pillar,
            notes=notes,
        )
        s.add(r)
        s.flush()
        enfileirar(
            s,
            NotificationType.SESSION_REQUEST,
            "Pedido de sessão recebido",
            "Recebemos o seu pedido. Um especialista será atribuído em breve.",
            recipient_id=ator.id,
        )
        logger.info("Pedido de sessão humana %s (%s)", r.id, pillar.value)
        return pedido_flat(r)


def listar_pedidos_sessao(
    status: SessionRequestStatus | None = SessionRequestStatus.PENDING,
    pillar: Pilar | None = None,
) -> list[dict]:
    with db_session() as s:
        q = select(SessionRequest).order_by(SessionRequest.created_at.asc())
        if status is not None:
            q = q.where(SessionRequest.status == status)
        if pillar is not None:
            q = q.where(SessionRequest.pillar == pillar)
        return [pedido_flat(r) for r in s.scalars(q)]


def atribuir_pedido_sessao(
    ator: Ator,
    request_id: str,
    prestador_id: str,
    booking_date: datetime,
    duration: int = 60,
) -> dict:
    """Cria a marcação para o pedido com o prestador escolhido."""
    exigir_papel(ator, Papel.ADMIN)
    with db_session() as s:
        r = s.get(SessionRequest, request_id)
        if not r:
            raise NaoEncontrado("Pedido de sessão não encontrado.")
        if r.status != SessionRequestStatus.PENDING:
            raise PedidoInvalido(f"O pedido já está {r.status.value}.")
        prestador = s.get(Prestador, prestador_id)
        if not prestador:
            raise NaoEncontrado("Prestador não encontrado.")
        if prestador.pillar != r.pillar:
            raise PedidoInvalido("O prestador não pertence ao pilar do pedido.")

        user = s.get(Profile, r.profile_id)
        b = criar_marcacao_em(s, user, prestador.id, booking_date, duration, notes=r.notes)
        r.status = SessionRequestStatus.SCHEDULED
        r.booking_id = b.id
        return {"request": pedido_flat(r), "booking": marcacao_flat(b)}


def cancelar_pedido_sessao(ator: Ator, request_id: str) -> dict:
    with db_session() as s:
        r = s.get(SessionRequest, request_id)
        if not r:
            raise NaoEncontrado("Pedido de sessão não encontrado.")
        if r.profile_id != ator.id and not ator.is_admin:
            raise SemPermissao("Sem acesso a este pedido.")
        if r.status != SessionRequestStatus.PENDING:
            raise PedidoInvalido(f"O pedido já está {r.status.value}.")
        r.status = SessionRequestStatus.CANCELLED
        return pedido_flat(r)
