from __future__ import annotations

from datetime import date, datetime, time

import streamlit as st

from melhor_saude.client import ClienteApi, ErroApi, jwt_is_expired, jwt_payload
from melhor_saude.config import API_BASE

st.set_page_config(page_title="Melhor Saúde", layout="wide")


def cliente() -> ClienteApi:
    return ClienteApi(API_BASE, token=st.session_state.get("token"))


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str)


def do_logout() -> None:
    for k in ("token", "user", "auth_error", "chat", "assessment"):
        st.session_state.pop(k, None)
    st.rerun()


def require_auth(*papeis: str) -> ClienteApi | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Secção reservada. Inicie sessão na barra lateral.")
        return None
    if jwt_is_expired(token):
        st.error("Sessão expirada. Termine a sessão e volte a entrar.")
        return None
    if papeis and jwt_payload(token).get("role") not in papeis:
        st.info("Esta secção não está disponível para o seu perfil.")
        return None
    return cliente()


def mostrar_erro(e: Exception) -> None:
    if isinstance(e, PermissionError):
        st.session_state["auth_error"] = str(e)
        st.error("Sessão inválida. Termine a sessão e volte a entrar.")
    elif isinstance(e, ErroApi):
        st.error(e.message)
    else:
        st.error(f"API inacessível ou erro: {e}")



# Sidebar login

with st.sidebar:
    st.header("Acesso")

    if not is_logged_in():
        email = st.text_input("Email", key="login_email")
        pwd = st.text_input("Password", type="password", key="login_pass")

        if st.button("Entrar", key="login_btn"):
            c = ClienteApi(API_BASE)
            try:
                st.session_state["user"] = c.login(email.strip().lower(), pwd)
                st.session_state["token"] = c.token
                st.session_state.pop("auth_error", None)
                st.rerun()
            except PermissionError:
                st.error("Credenciais inválidas.")
            except Exception as e:
                mostrar_erro(e)

        with st.expander("Tenho um código de convite"):
            code = st.text_input("Código", key="reg_code")
            reg_email = st.text_input("Email (opcional)", key="reg_email")
            reg_nome = st.text_input("Nome (opcional)", key="reg_nome")
            reg_pwd = st.text_input("Password (mín. 8)", type="password", key="reg_pass")
            if st.button("Registar", key="reg_btn"):
                c = ClienteApi(API_BASE)
                try:
                    st.session_state["user"] = c.registar_com_convite(
                        code.strip().upper(), reg_pwd, reg_nome.strip() or None, reg_email.strip() or None
                    )
                    st.session_state["token"] = c.token
                    st.rerun()
                except Exception as e:
                    mostrar_erro(e)
    else:
        user = st.session_state.get("user") or {}
        st.write(f"Utilizador: **{user.get('name') or jwt_payload(st.session_state['token']).get('email')}**")
        st.caption(f"Perfil: {user.get('role', '-')}")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Sair", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")



# UI

st.title("Melhor Saúde")

tab1, tab2, tab3, tab4 = st.tabs(["Avaliação e chat", "Marcações", "Convites (RH)", "Relatórios (admin)"])


@st.cache_data(ttl=60)
def load_pilares() -> list[dict]:
    return ClienteApi(API_BASE).pilares()  # público



# TAB 1 - Avaliação e chat

with tab1:
    c = require_auth()
    if c:
        try:
            pilares = load_pilares()
        except Exception as e:
            mostrar_erro(e)
            st.stop()

        if "assessment" not in st.session_state:
            st.subheader("Como podemos ajudar?")
            pilar = st.selectbox("Área", options=pilares, format_func=lambda p: p["title"], key="av_pilar")
            topico = st.selectbox("Tema", options=pilar["topics"], format_func=lambda t: f"{t['title']} - {t['subtitle']}", key="av_topico")
            sintomas = st.multiselect("O que sente?", options=pilar["symptoms"], key="av_sintomas")
            contexto = st.text_area("Quer acrescentar algo? (opcional)", key="av_contexto")
            if st.button("Continuar", key="av_submit"):
                try:
                    st.session_state["assessment"] = c.iniciar_avaliacao(
                        pilar["pillar"], topico["id"], sintomas, contexto.strip() or None
                    )
                    st.rerun()
                except Exception as e:
                    mostrar_erro(e)
        else:
            av = st.session_state["assessment"]
            col1, col2 = st.columns(2)
            if col1.button("Falar com o assistente", key="av_chat", disabled="chat" in st.session_state):
                try:
                    chat = c.iniciar_chat(av["id"])
                    st.session_state["chat"] = {"id": chat["id"], "mensagens": [("assistant", chat["greeting"])]}
                    st.rerun()
                except Exception as e:
                    mostrar_erro(e)
            if col2.button("Pedir sessão com especialista", key="av_humano"):
                try:
                    chat_id = st.session_state.get("chat", {}).get("id")
                    c.pedir_sessao_humana(assessment_id=av["id"], chat_session_id=chat_id)
                    st.success("Pedido registado. A equipa vai contactá-lo para agendar.")
                except Exception as e:
                    mostrar_erro(e)

            chat = st.session_state.get("chat")
            if chat:
                for papel, texto in chat["mensagens"]:
                    with st.chat_message(papel):
                        st.write(texto)
                pergunta = st.chat_input("Escreva a sua mensagem")
                if pergunta:
                    try:
                        res = c.enviar_mensagem(chat["id"], pergunta)
                        chat["mensagens"] += [("user", pergunta), ("assistant", res["reply"])]
                        if res.get("suggest_escalation"):
                            st.warning("Recomendamos falar com um especialista.")
                        st.rerun()
                    except Exception as e:
                        mostrar_erro(e)

            if st.button("Nova avaliação", key="av_reset"):
                st.session_state.pop("assessment", None)
                st.session_state.pop("chat", None)
                st.rerun()



# TAB 2 - Marcações

with tab2:
    c = require_auth()
    if c:
        papel = jwt_payload(st.session_state["token"]).get("role")

        if papel == "user":
            try:
                saldo = c.saldo()
                st.metric("Sessões disponíveis", saldo["total_remaining"])
            except Exception as e:
                mostrar_erro(e)

            with st.expander("Nova marcação"):
                try:
                    pilares = load_pilares()
                    pilar = st.selectbox("Área", options=pilares, format_func=lambda p: p["title"], key="m_pilar")
                    prestadores = c.prestadores(pilar["pillar"])
                except Exception as e:
                    mostrar_erro(e)
                    prestadores = []

                if not prestadores:
                    st.info("Sem especialistas disponíveis nesta área.")
                else:
                    prest = st.selectbox("Especialista", options=prestadores, format_func=lambda p: p["name"], key="m_prest")
                    dia = st.date_input("Dia", value=date.today(), key="m_dia")
                    try:
                        slots = c.horarios(prest["id"], dia)
                    except Exception as e:
                        mostrar_erro(e)
                        slots = []
                    hora = st.selectbox("Hora", options=slots, key="m_hora")
                    notas = st.text_area("Notas (opcional)", key="m_notas")
                    if st.button("Marcar", key="m_submit", disabled=not slots):
                        inicio = datetime.combine(dia, time.fromisoformat(hora))
                        try:
                            res = c.criar_marcacao(prest["id"], inicio, notes=notas.strip() or None)
                            st.success(f"Marcação criada para {res['booking_date']}.")
                        except Exception as e:
                            mostrar_erro(e)

        st.divider()
        st.write("As minhas marcações:")
        try:
            items = c.marcacoes()
            if not items:
                st.info("Sem marcações.")
            for b in items:
                col1, col2 = st.columns([4, 1])
                col1.write(
                    f"- **{b['booking_date'][:16].replace('T', ' ')}** | {b['prestador_name']} | "
                    f"{b['user_name']} | {b['duration']} min | Estado: {b['status']}"
                )
                if b["status"] in ("scheduled", "confirmed"):
                    if papel in ("prestador", "admin") and col2.button("Concluir", key=f"done_{b['id']}"):
                        try:
                            c.concluir_sessao(b["id"])
                            st.rerun()
                        except Exception as e:
                            mostrar_erro(e)
                    if papel == "user" and col2.button("Cancelar", key=f"cancel_{b['id']}"):
                        try:
                            c.cancelar_marcacao(b["id"], "Cancelada pelo utilizador")
                            st.rerun()
                        except Exception as e:
                            mostrar_erro(e)
        except Exception as e:
            mostrar_erro(e)



# TAB 3 - Convites (RH)

with tab3:
    c = require_auth("hr", "admin")
    if c:
        user = st.session_state.get("user") or {}
        company_id = user.get("company_id")
        if user.get("role") == "admin":
            try:
                empresas = c.empresas()
                emp = st.selectbox("Empresa", options=empresas, format_func=lambda e: e["name"], key="inv_emp")
                company_id = emp["id"] if emp else None
            except Exception as e:
                mostrar_erro(e)

        if company_id:
            try:
                ad = c.adocao(company_id)
                k1, k2, k3 = st.columns(3)
                k1.metric("Colaboradores", ad["employees"])
                k2.metric("Taxa de aceitação", f"{ad['acceptance_rate']}%")
                k3.metric("Taxa de adoção", f"{ad['adoption_rate']}%")
            except Exception as e:
                mostrar_erro(e)

            try:
                st.download_button("Descarregar modelo CSV", c.modelo_convites(), file_name="modelo_convites.csv")
            except Exception as e:
                mostrar_erro(e)

            ficheiro = st.file_uploader("Carregar CSV de convites", type=["csv"], key="inv_csv")
            sessoes = st.number_input("Sessões por omissão", min_value=0, value=10, key="inv_sessoes")
            if ficheiro and st.button("Enviar convites", key="inv_submit"):
                try:
                    res = c.convidar_csv(company_id, ficheiro.getvalue(), ficheiro.name, int(sessoes))
                    st.success(f"{res['created']} convites criados, {res['failed']} com erro.")
                    st.dataframe(res["results"])
                    st.download_button("Descarregar resultados", res["csv"], file_name="resultados_convites.csv")
                except Exception as e:
                    mostrar_erro(e)

            st.divider()
            try:
                st.dataframe(c.convites(company_id))
            except Exception as e:
                mostrar_erro(e)



# TAB 4 - Relatórios (admin)

with tab4:
    c = require_auth("admin", "hr")
    if c:
        hoje = date.today()
        col1, col2 = st.columns(2)
        ano = col1.number_input("Ano", min_value=2020, max_value=2100, value=hoje.year, key="rel_ano")
        mes = col2.number_input("Mês", min_value=1, max_value=12, value=hoje.month, key="rel_mes")

        try:
            rel = c.relatorio(int(ano), int(mes))
            k1, k2, k3, k4 = st.columns(4)
            k1.metric("Utilizadores ativos", rel["total_users"])
            k2.metric("Com marcações", rel["users_with_bookings"])
            k3.metric("Sessões concluídas", rel["users_completed"])
            k4.metric("Taxa de acesso", f"{rel['employee_access_percentage']}%")
            st.dataframe([{"pilar": p, **v} for p, v in rel["consultations_by_pillar"].items()])
            st.dataframe(rel["detailed"])

            st.download_button(
                "Exportar CSV",
                c.relatorio(int(ano), int(mes), formato="csv"),
                file_name=f"relatorio_{int(ano)}_{int(mes):02d}.csv",
            )
            st.download_button(
                "Exportar HTML (imprimível)",
                c.relatorio(int(ano), int(mes), formato="html"),
                file_name=f"relatorio_{int(ano)}_{int(mes):02d}.html",
            )
        except Exception as e:
            mostrar_erro(e)

        if jwt_payload(st.session_state["token"]).get("role") == "admin":
            st.divider()
            st.subheader("Visão geral da plataforma")
            try:
                st.json(c.visao_geral())
            except Exception as e:
                mostrar_erro(e)
