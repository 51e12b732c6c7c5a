# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets (the Matrix password belongs in .env, which is gitignored).

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "PROMPT_RELAY_APP_NAME": "App display name (default: prompt-relay).",
    "PROMPT_RELAY_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Connectors
    "PROMPT_RELAY_CONSOLE_ENABLED": "Enable console connector (true/false, default: true).",
    "PROMPT_RELAY_MATRIX_ENABLED": "Enable Matrix connector (true/false, default: false).",
    # Workspaces / agent
    "PROMPT_RELAY_WORKSPACES": "Workspace table: 'name=/path' pairs, comma or space separated.",
    "PROMPT_RELAY_DEFAULT_WORKSPACE": "Workspace made active at startup when none was persisted.",
    "PROMPT_RELAY_AGENT_COMMAND": (
        "Agent command template; must contain {prompt} "
        "(default: claude --dangerously-skip-permissions -p {prompt})."
    ),
    # Processor tuning
    "PROMPT_RELAY_MAX_RETRIES": "Retries after the first attempt (default: 3; legacy: MAX_RETRIES).",
    "PROMPT_RELAY_RETRY_BACKOFF_BASE_MS": (
        "Backoff base in ms, delay = base * 2^retries (default: 1000; legacy: RETRY_BACKOFF_BASE)."
    ),
    "PROMPT_RELAY_POLL_INTERVAL_MS": "Idle poll interval in ms (default: 1000).",
    "PROMPT_RELAY_CLEANUP_MAX_AGE_HOURS": "Age after which finished tasks are swept (default: 24).",
    "PROMPT_RELAY_CLEANUP_INTERVAL_MINUTES": "How often the idle processor sweeps (0 disables, default: 60).",
    "PROMPT_RELAY_RECOVER_ORPHANS": "Requeue tasks left running by a crash (true/false, default: true).",
    "PROMPT_RELAY_MESSAGE_MAX_CHARS": "Max characters of agent output per chat message (default: 4000).",
    # Matrix
    "PROMPT_RELAY_MATRIX_HOMESERVER": "Matrix homeserver URL.",
    "PROMPT_RELAY_MATRIX_USER_ID": "Matrix user ID (bot).",
    "PROMPT_RELAY_MATRIX_PASSWORD": "Password for first login (session stored locally).",
    "PROMPT_RELAY_MATRIX_ROOMS": "Optional allowlist of room IDs (empty => all rooms).",
    # Paths (gitignored)
    "PROMPT_RELAY_DATA_DIR": "Local data directory (default: .local/prompt-relay).",
    "PROMPT_RELAY_STATE_FILE": "Queue snapshot JSON path (default: <data_dir>/queue_state.json).",
    "PROMPT_RELAY_MATRIX_STORE_PATH": "Matrix session directory (default: <data_dir>/matrix_store).",
}
