"""Application configuration for the LLM key ledger."""

from __future__ import annotations

OPENAI_API_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_API_BASE_URL = "https://api.anthropic.com/v1"
OPENROUTER_API_BASE_URL = "https://openrouter.ai/api/v1"
ANTHROPIC_VERSION = "2023-06-01"

OPENAI_PROJECTS_ENDPOINT = "/organization/projects"
OPENAI_PROJECT_KEYS_ENDPOINT_TEMPLATE = "/organization/projects/{project_id}/api_keys"
OPENAI_USAGE_COMPLETIONS_ENDPOINT = "/organization/usage/completions"
ANTHROPIC_API_KEYS_ENDPOINT = "/organizations/api_keys"
ANTHROPIC_USAGE_REPORT_MESSAGES_ENDPOINT = "/organizations/usage_report/messages"
OPENAI_COSTS_ENDPOINT = "/organization/costs"
ANTHROPIC_COST_REPORT_ENDPOINT = "/organizations/cost_report"
OPENROUTER_KEYS_ENDPOINT = "/keys"

VOLCENGINE_IAM_HOST = "iam.volcengineapi.com"
VOLCENGINE_IAM_REGION = "cn-north-1"
VOLCENGINE_IAM_VERSION = "2018-01-01"
VOLCENGINE_ARK_HOST = "open.volcengineapi.com"
VOLCENGINE_ARK_REGION = "cn-beijing"
VOLCENGINE_ARK_VERSION = "2024-01-01"

PLATFORMS = ("openai", "anthropic", "openrouter", "volcengine")

PLATFORM_LABELS = {
    "openai": "OpenAI",
    "anthropic": "Claude",
    "openrouter": "OpenRouter",
    "volcengine": "Volcengine",
}

# Masked-key placeholders used when a provider listing carries no key hint.
DEFAULT_KEY_PREFIXES = {
    "openai": "sk-proj-",
    "anthropic": "sk-ant-",
    "openrouter": "sk-or-v1-",
    "volcengine": "AKLT",
}
MASKED_PREFIX_LENGTH = 15
MASKED_SUFFIX_LENGTH = 8

DEFAULT_BUCKET_WIDTH = "1d"
DEFAULT_KEY_LIST_LIMIT = 100
REQUEST_TIMEOUT_SECONDS = 30
MAX_PAGES = 20
STAGE_RETRIES = 1
RETRY_BACKOFF_SECONDS = 0.5
MAX_FAILURE_DETAILS = 50

# Cost rows with no workspace or project id belong to the default workspace.
DEFAULT_COST_GROUP = "default"
COST_DECIMALS = 4

AUTO_SYNC_DEBOUNCE_SECONDS = 300
CRON_SYNC_INTERVAL_SECONDS = 3600
MAX_ACCOUNTS_PER_RUN = 3

DEFAULT_ACCOUNTS_FILE = "accounts.yaml"
DEFAULT_SQLITE_PATH = "data/keyledger.db"

ENV_ACCOUNTS_FILE = "KEYLEDGER_ACCOUNTS_FILE"
ENV_SQLITE_PATH = "KEYLEDGER_SQLITE_PATH"
ENV_OPENAI_ADMIN_KEY = "OPENAI_ADMIN_KEY"
ENV_ANTHROPIC_ADMIN_KEY = "ANTHROPIC_ADMIN_KEY"
ENV_OPENROUTER_PROVISIONING_KEY = "OPENROUTER_PROVISIONING_KEY"
ENV_VOLCENGINE_ADMIN_KEY = "VOLCENGINE_ADMIN_KEY"

DEFAULT_CREDENTIAL_ENV = {
    "openai": ENV_OPENAI_ADMIN_KEY,
    "anthropic": ENV_ANTHROPIC_ADMIN_KEY,
    "openrouter": ENV_OPENROUTER_PROVISIONING_KEY,
    "volcengine": ENV_VOLCENGINE_ADMIN_KEY,
}
