import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import streamlit as st
from websocket import WebSocketTimeoutException, create_connection


def setup_client_logging() -> logging.Logger:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("starkagent.streamlit")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "client.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


LOGGER = setup_client_logging()


def get_connection(ws_url: str):
    """Return the cached WebSocket for this browser session, reconnecting if needed."""
    ws = st.session_state.get("ws")
    if ws is not None and ws.connected and st.session_state.get("ws_url") == ws_url:
        return ws
    LOGGER.info("Connecting ws_url=%s", ws_url)
    ws = create_connection(ws_url, timeout=120)
    st.session_state["ws"] = ws
    st.session_state["ws_url"] = ws_url
    return ws


def send_and_wait(ws_url: str, session_id: str, message: str) -> tuple[str, list[str]]:
    """Send a message and wait for its reply.

    Returns (reply, background_updates) where background_updates are
    results of background actions that arrived in the meantime.
    """
    ws = get_connection(ws_url)
    ws.send(json.dumps({"session_id": session_id, "message": message}))
    updates: list[str] = []
    while True:
        payload = json.loads(ws.recv())
        t = payload.get("type")
        if t == "message":
            return payload.get("data") or "", updates
        if t == "background":
            updates.append(payload.get("data") or "")
        elif t == "error":
            err = payload.get("data") or "Unknown error"
            LOGGER.error("WS error: %s", err)
            raise RuntimeError(err)


def drain_background(ws_url: str, wait_seconds: float = 2.0) -> list[str]:
    """Collect background action results pushed since the last call."""
    ws = get_connection(ws_url)
    ws.settimeout(wait_seconds)
    updates: list[str] = []
    try:
        while True:
            payload = json.loads(ws.recv())
            if payload.get("type") == "background":
                updates.append(payload.get("data") or "")
    except WebSocketTimeoutException:
        pass
    finally:
        ws.settimeout(120)
    return updates


def _add(role: str, content: str) -> None:
    st.session_state["messages"].append({"role": role, "content": content})


st.set_page_config(page_title="Starknet Agent", page_icon="🪙", layout="centered")

st.title("Starknet Agent")

if "messages" not in st.session_state:
    st.session_state["messages"] = []

with st.sidebar:
    st.subheader("Connection")
    default_ws = "ws://localhost:8000/ws/chat"
    ws_url = st.text_input("WebSocket URL", value=default_ws)
    session_id = st.text_input("Session ID", value=st.session_state.get("session_id", "streamlit-demo"))
    st.session_state["session_id"] = session_id
    st.markdown("---")
    if st.button("Check background updates"):
        try:
            for update in drain_background(ws_url):
                _add("assistant", f"⏱️ {update}")
        except (OSError, RuntimeError) as e:
            st.error(f"Error: {e}")
    if st.button("Clear chat"):
        st.session_state["messages"] = []

for m in st.session_state["messages"]:
    with st.chat_message(m["role"]):
        st.markdown(m["content"])

prompt = st.chat_input("Create an account, check a balance, swap ETH for STRK…")
if prompt:
    _add("user", prompt)
    with st.chat_message("user"):
        st.markdown(prompt)

    with st.chat_message("assistant"):
        try:
            with st.spinner("Thinking…"):
                reply, updates = send_and_wait(ws_url, session_id, prompt)
        except (OSError, RuntimeError, ValueError) as e:
            reply, updates = f"Error: {e}", []
            st.session_state.pop("ws", None)
            st.error(reply)
        else:
            st.markdown(reply)

    for update in updates:
        _add("assistant", f"⏱️ {update}")
    _add("assistant", reply)
