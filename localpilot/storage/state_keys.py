"""
Persisted state keys and the defaults applied when state is loaded.

State lives in three flat namespaces: global state, secrets and
workspace-local state. Keys are the snake_case names used throughout
localpilot; ApiConfiguration fields map one-to-one onto global state keys,
except the Ollama API key which is a secret.
"""

from typing import Any

from localpilot.config import DEFAULT_MODE, DEFAULT_REASONING_EFFORT, ApiConfiguration

SECRET_KEYS: frozenset[str] = frozenset({"ollama_api_key", "api_key"})

API_CONFIGURATION_KEYS: frozenset[str] = frozenset(ApiConfiguration.model_fields) - SECRET_KEYS

GLOBAL_STATE_KEYS: frozenset[str] = API_CONFIGURATION_KEYS | frozenset({
    "mode",
    "preferred_language",
    "plan_act_separate_models_setting",
    "strict_plan_mode_enabled",
    "is_new_user",
    "welcome_view_completed",
    "last_shown_announcement_id",
    "task_history",
    "global_rules_toggles",
    "global_workflow_toggles",
})

LOCAL_STATE_KEYS: frozenset[str] = frozenset({
    "local_rules_toggles",
    "workflow_toggles",
})

DEFAULT_API_PROVIDER = "lmstudio"
DEFAULT_PREFERRED_LANGUAGE = "English"


async def read_state_from_storage(storage) -> dict[str, dict[str, Any]]:
    """
    Load all three namespaces and fill in defaults.

    Returns {"global_state": ..., "secrets": ..., "workspace_state": ...}.
    Unknown keys found on disk are dropped.
    """
    raw_global = await storage.global_state.load()
    raw_secrets = await storage.secrets.load()
    raw_local = await storage.workspace_state.load()

    global_state = {k: v for k, v in raw_global.items() if k in GLOBAL_STATE_KEYS}
    secrets = {k: v for k, v in raw_secrets.items() if k in SECRET_KEYS}
    workspace_state = {k: v for k, v in raw_local.items() if k in LOCAL_STATE_KEYS}

    plan_provider = global_state.get("plan_mode_api_provider")
    api_provider = plan_provider or DEFAULT_API_PROVIDER
    global_state["plan_mode_api_provider"] = plan_provider or api_provider
    global_state["act_mode_api_provider"] = global_state.get("act_mode_api_provider") or api_provider

    # Existing users (anyone who ever stored a plan provider) keep separate models
    separate = global_state.get("plan_act_separate_models_setting")
    if not isinstance(separate, bool):
        global_state["plan_act_separate_models_setting"] = bool(plan_provider)

    global_state["mode"] = global_state.get("mode") or DEFAULT_MODE
    global_state["openai_reasoning_effort"] = (
        global_state.get("openai_reasoning_effort") or DEFAULT_REASONING_EFFORT
    )
    global_state["preferred_language"] = (
        global_state.get("preferred_language") or DEFAULT_PREFERRED_LANGUAGE
    )
    global_state.setdefault("strict_plan_mode_enabled", False)
    global_state.setdefault("is_new_user", True)
    global_state["task_history"] = global_state.get("task_history") or []
    global_state["global_rules_toggles"] = global_state.get("global_rules_toggles") or {}
    global_state["global_workflow_toggles"] = global_state.get("global_workflow_toggles") or {}

    for key in LOCAL_STATE_KEYS:
        workspace_state[key] = workspace_state.get(key) or {}

    return {
        "global_state": global_state,
        "secrets": secrets,
        "workspace_state": workspace_state,
    }
