"""
Streamlit Frontend for Prismo

The chat client of the assistant. It talks to the Prismo API over HTTP
and renders the answer as it streams in.

DESIGN PRINCIPLES:
1. The user's message appears immediately (optimistic)
2. If the turn fails, the message is rolled back - the screen never
   shows a question the server did not store
3. Configuration problems point the user to the settings page
4. Every answer shows which data it was based on

Chat state lives in st.session_state, one per browser session.
"""

import json
from typing import Iterator, Optional

import httpx
import streamlit as st

from prismo.config import get_settings, validate_all_settings


# Page configuration
st.set_page_config(
    page_title="Prismo AI",
    page_icon="💬",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .warning-box {
        padding: 16px;
        background-color: #fff3cd;
        border-radius: 10px;
        border-left: 5px solid #ffc107;
        margin: 10px 0;
    }
    .source-tag {
        display: inline-block;
        padding: 2px 8px;
        margin-right: 4px;
        border-radius: 8px;
        background-color: #e8f0fe;
        font-size: 0.8em;
    }
</style>
""", unsafe_allow_html=True)

CHAT_PAGE = "💬 Chat"
SETTINGS_PAGE = "⚙️ AI Settings"

PROVIDERS = {
    "azure_openai": "Azure OpenAI",
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "gemini": "Google Gemini",
}
DATA_ACCESS_FIELDS = [
    "transactions", "budgets", "goals", "subscriptions",
    "creditCards", "taxData", "income", "forecasts",
]


# ============================================================================
# API CLIENT
# ============================================================================

class ApiError(Exception):
    """Non-2xx response or a terminal error event."""

    def __init__(self, error_type: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code


def _raise_for_error(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        error = response.json().get("error", {})
    except ValueError:
        error = {}
    raise ApiError(
        error.get("type", "HTTPError"),
        error.get("message", f"Request failed ({response.status_code})"),
        response.status_code,
    )


def parse_sse(lines: Iterator[str]) -> Iterator[dict]:
    """Decode `data: {json}` frames; blank lines separate events."""
    for line in lines:
        if line.startswith("data: "):
            yield json.loads(line[len("data: "):])


class PrismoClient:
    """Thin synchronous wrapper around the /api/ai routes."""

    def __init__(self, base_url: str, user_id: str, timeout: float = 90.0):
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"X-User-Id": user_id},
            timeout=timeout,
        )

    def _request(self, method: str, path: str, **kwargs):
        response = self._http.request(method, path, **kwargs)
        _raise_for_error(response)
        return response.json()

    def get_settings(self) -> dict:
        return self._request("GET", "/settings")

    def update_settings(self, values: dict) -> dict:
        return self._request("POST", "/settings", json=values)

    def reset_settings(self) -> dict:
        return self._request("DELETE", "/settings")

    def test_connection(self, values: dict) -> dict:
        return self._request("POST", "/test-connection", json=values)

    def list_conversations(self, include_archived: bool = False) -> list[dict]:
        return self._request(
            "GET", "/conversations", params={"includeArchived": str(include_archived).lower()}
        )

    def get_conversation(self, conversation_id: str) -> dict:
        return self._request("GET", f"/conversations/{conversation_id}")

    def update_conversation(self, conversation_id: str, **values) -> dict:
        return self._request("PATCH", f"/conversations/{conversation_id}", json=values)

    def delete_conversation(self, conversation_id: str) -> None:
        self._request("DELETE", f"/conversations/{conversation_id}")

    def stream_chat(self, message: str, conversation_id: Optional[str]) -> Iterator[dict]:
        """
        Yield the events of one turn.

        Raises:
            ApiError: The turn was rejected, or ended with an error event
        """
        body = {"message": message, "conversationId": conversation_id, "stream": True}
        with self._http.stream("POST", "/chat", json=body) as response:
            if response.status_code >= 400:
                response.read()
                _raise_for_error(response)
            for event in parse_sse(response.iter_lines()):
                if event["type"] == "error":
                    raise ApiError(event.get("errorType", "GenerationError"), event["message"])
                yield event


def get_client() -> PrismoClient:
    user_id = st.session_state.get("user_id") or "demo-user"
    key = ("prismo_client", user_id)
    if key not in st.session_state:
        st.session_state[key] = PrismoClient(get_settings().app.api_base_url, user_id)
    return st.session_state[key]


# ============================================================================
# SESSION STATE
# ============================================================================

def init_state() -> None:
    defaults = {
        "user_id": "demo-user",
        "conversation_id": None,
        "messages": [],
        "config_error": None,
        "page": CHAT_PAGE,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def open_conversation(conversation_id: Optional[str]) -> None:
    st.session_state.conversation_id = conversation_id
    st.session_state.messages = []
    if conversation_id:
        detail = get_client().get_conversation(conversation_id)
        st.session_state.messages = [
            {
                "role": m["role"],
                "content": m["content"],
                "dataSources": m.get("dataSources", []),
                "confidence": m.get("confidenceScore"),
            }
            for m in detail["messages"]
        ]


# ============================================================================
# PAGES
# ============================================================================

def main():
    """Main application entry point."""
    init_state()

    st.sidebar.title("💬 Prismo AI")
    st.sidebar.text_input("User ID", key="user_id")
    st.sidebar.markdown("---")

    page = st.sidebar.radio("Navigate to:", [CHAT_PAGE, SETTINGS_PAGE], key="page")

    if page == CHAT_PAGE:
        render_conversation_sidebar()
        render_chat_page()
    else:
        render_settings_page()


def render_conversation_sidebar():
    """Conversation list with new / rename / archive / delete."""
    client = get_client()

    if st.sidebar.button("➕ New conversation"):
        open_conversation(None)
        st.rerun()

    include_archived = st.sidebar.checkbox("Show archived")
    try:
        conversations = client.list_conversations(include_archived)
    except (ApiError, httpx.HTTPError) as e:
        st.sidebar.error(f"Could not load conversations: {e}")
        return

    for conversation in conversations:
        label = conversation["title"]
        if conversation.get("isArchived"):
            label = f"🗄️ {label}"
        if st.sidebar.button(label, key=f"open-{conversation['id']}"):
            open_conversation(conversation["id"])
            st.rerun()

    current = st.session_state.conversation_id
    if not current:
        return

    with st.sidebar.expander("Manage this conversation"):
        title = st.text_input("Rename to")
        if st.button("Rename") and title.strip():
            client.update_conversation(current, title=title.strip())
            st.rerun()
        if st.button("Archive"):
            client.update_conversation(current, isArchived=True)
            open_conversation(None)
            st.rerun()
        if st.button("🗑️ Delete"):
            client.delete_conversation(current)
            open_conversation(None)
            st.rerun()


def render_sources(sources: list[str], confidence: Optional[float]) -> None:
    if not sources:
        return
    tags = "".join(f'<span class="source-tag">{s}</span>' for s in sources)
    score = f" · confidence {confidence:.0%}" if confidence is not None else ""
    st.markdown(f"{tags}{score}", unsafe_allow_html=True)


def render_chat_page():
    """Chat transcript and input."""
    st.title("💬 Ask about your money")

    if st.session_state.config_error:
        st.markdown(f"""
        <div class="warning-box">
            <h4>⚠️ The assistant is not set up</h4>
            <p>{st.session_state.config_error}</p>
            <p>Open <strong>{SETTINGS_PAGE}</strong> in the sidebar to finish the setup.</p>
        </div>
        """, unsafe_allow_html=True)

    for message in st.session_state.messages:
        with st.chat_message(message["role"]):
            st.markdown(message["content"])
            render_sources(message.get("dataSources", []), message.get("confidence"))

    prompt = st.chat_input("e.g. How much did I spend on food this month?")
    if prompt:
        send(prompt)


def send(prompt: str) -> None:
    """Run one turn with optimistic rendering and rollback on failure."""
    messages = st.session_state.messages
    messages.append({"role": "user", "content": prompt})
    with st.chat_message("user"):
        st.markdown(prompt)

    metadata: dict = {}
    parts: list[str] = []
    with st.chat_message("assistant"):
        placeholder = st.empty()
        try:
            for event in get_client().stream_chat(prompt, st.session_state.conversation_id):
                if event["type"] == "start":
                    st.session_state.conversation_id = event["conversationId"]
                elif event["type"] == "chunk":
                    parts.append(event["content"])
                    placeholder.markdown("".join(parts) + "▌")
                elif event["type"] == "metadata":
                    metadata = event
        except (ApiError, httpx.HTTPError) as e:
            messages.pop()
            placeholder.empty()
            if isinstance(e, ApiError) and e.error_type == "ConfigurationError":
                st.session_state.config_error = str(e)
                st.rerun()
            st.error(f"Your message was not sent: {e}")
            return

        placeholder.markdown("".join(parts))
        render_sources(metadata.get("dataSources", []), metadata.get("confidenceScore"))
        if metadata.get("needsExternalFallback"):
            st.caption("Limited data available for this question.")

    st.session_state.config_error = None
    messages.append({
        "role": "assistant",
        "content": "".join(parts),
        "dataSources": metadata.get("dataSources", []),
        "confidence": metadata.get("confidenceScore"),
    })


def render_settings_page():
    """Per-user AI settings, connection test and server status."""
    st.title("⚙️ AI Settings")
    client = get_client()

    try:
        current = client.get_settings()
    except (ApiError, httpx.HTTPError) as e:
        st.error(f"Could not load settings: {e}")
        return

    with st.form("ai-settings"):
        ai_enabled = st.toggle("Enable AI assistant", value=current["aiEnabled"])
        provider = st.selectbox(
            "Provider",
            options=list(PROVIDERS),
            index=list(PROVIDERS).index(current["provider"]),
            format_func=PROVIDERS.get,
        )
        model_endpoint = st.text_input("Endpoint (Azure only)", value=current.get("modelEndpoint") or "")
        model_name = st.text_input("Model / deployment name", value=current.get("modelName") or "")
        api_key = st.text_input(
            "API key",
            type="password",
            placeholder=current.get("maskedApiKey") or "Not set",
            help="Leave empty to keep the stored key",
        )
        clear_key = st.checkbox("Remove stored key", disabled=not current["hasApiKey"])

        col1, col2 = st.columns(2)
        with col1:
            temperature = st.slider("Temperature", 0.0, 1.0, float(current["temperature"]), 0.05)
            max_tokens = st.select_slider(
                "Max response tokens", options=[1024, 2048, 4096, 8192], value=current["maxTokens"]
            )
        with col2:
            enable_crag = st.toggle("Self-correcting retrieval", value=current["enableCrag"])
            relevance_threshold = st.slider(
                "Relevance threshold", 0.5, 0.95, float(current["relevanceThreshold"]), 0.05
            )
            max_retrieval_docs = st.number_input(
                "Max documents", 1, 50, int(current["maxRetrievalDocs"])
            )

        st.markdown("**Data the assistant may read**")
        access_columns = st.columns(4)
        data_access = {
            source: access_columns[i % 4].checkbox(source, value=current["dataAccess"][source])
            for i, source in enumerate(DATA_ACCESS_FIELDS)
        }
        anonymize = st.checkbox("Anonymize vendor names", value=current["anonymizeVendors"])
        excluded = st.text_input(
            "Excluded categories (comma separated)",
            value=", ".join(current["excludeSensitiveCategories"]),
        )

        saved = st.form_submit_button("💾 Save", type="primary")

    if saved:
        values = {
            "aiEnabled": ai_enabled,
            "provider": provider,
            "modelEndpoint": model_endpoint,
            "modelName": model_name,
            "temperature": temperature,
            "maxTokens": max_tokens,
            "enableCrag": enable_crag,
            "relevanceThreshold": relevance_threshold,
            "maxRetrievalDocs": max_retrieval_docs,
            "dataAccess": data_access,
            "anonymizeVendors": anonymize,
            "excludeSensitiveCategories": [c.strip() for c in excluded.split(",") if c.strip()],
        }
        if clear_key:
            values["apiKey"] = ""
        elif api_key:
            values["apiKey"] = api_key
        try:
            client.update_settings(values)
            st.session_state.config_error = None
            st.success("Settings saved")
        except (ApiError, httpx.HTTPError) as e:
            st.error(f"Could not save: {e}")

    col1, col2 = st.columns(2)
    with col1:
        if st.button("🔌 Test connection"):
            candidate = {
                "provider": provider,
                "modelEndpoint": model_endpoint or None,
                "modelName": model_name or None,
                "apiKey": api_key or None,
            }
            try:
                result = client.test_connection(candidate)
            except (ApiError, httpx.HTTPError) as e:
                st.error(str(e))
            else:
                if result["success"]:
                    st.success(f"✅ {result['message']} ({result.get('latencyMs')} ms)")
                else:
                    st.error(f"❌ {result['message']}")
    with col2:
        if st.button("↩️ Reset to defaults"):
            client.reset_settings()
            st.rerun()

    st.markdown("---")
    st.markdown("### Server configuration")
    status = validate_all_settings()
    for name in ("database", "security", "chat", "app"):
        if status.get(name, False):
            st.success(f"✅ {name.title()}")
        else:
            st.error(f"❌ {name.title()} - {status.get(f'{name}_error', 'Not configured')}")


if __name__ == "__main__":
    main()
