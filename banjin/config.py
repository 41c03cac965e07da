import os
import copy
import json
import pathlib
import re
import logging
from dataclasses import dataclass, field, fields
from typing import Dict, Any, Optional, List
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "llama-3.3-70b-versatile"
DEFAULT_TOOL_TIMEOUT_SECONDS = 300
OUTPUT_FORMATS = ("plain", "markdown")

# Host pattern -> request shaping. First match wins, 'generic' is the fallback.
PROVIDERS: Dict[str, Dict[str, Any]] = {
    'groq': {
        'pattern': re.compile(r'(^|\.)api\.groq\.com$', re.I),
        'headers': {},
        'model_prefix': None,
        'hint': 'groq returned 403. Check your API key and configuration.',
    },
    'openrouter': {
        'pattern': re.compile(r'(^|\.)openrouter\.ai$', re.I),
        'headers': {
            'HTTP-Referer': 'https://banjin.local',
            'X-Title': 'Banjin CLI',
        },
        # Bare names of these families are ambiguous on OpenRouter
        'model_prefix': ('openrouter/', re.compile(r'llama|mixtral|qwen', re.I)),
        'hint': ('OpenRouter requires: valid API key, proper HTTP-Referer header, '
                 'and model name format. Check your API key and try using format: "provider/model"'),
    },
    'together': {
        'pattern': re.compile(r'(^|\.)api\.together\.(ai|xyz)$', re.I),
        'headers': {},
        'model_prefix': None,
        'hint': 'together returned 403. Check your API key and configuration.',
    },
    'generic': {
        'pattern': None,
        'headers': {},
        'model_prefix': None,
        'hint': ('the server returned 403. Likely causes: invalid API key, '
                 'malformed model id, or a missing required header.'),
    },
}


def detect_provider(base_url: str) -> str:
    host = urlparse(base_url or "").hostname or ""
    for provider, spec in PROVIDERS.items():
        pattern = spec['pattern']
        if pattern is not None and pattern.search(host):
            return provider
    return 'generic'


def provider_headers(provider: str) -> Dict[str, str]:
    return dict(PROVIDERS.get(provider, PROVIDERS['generic'])['headers'])


def normalize_model_name(model: str, provider: str) -> str:
    rule = PROVIDERS.get(provider, PROVIDERS['generic'])['model_prefix']
    if not rule or '/' in model:
        return model
    prefix, pattern = rule
    if pattern.search(model):
        return f"{prefix}{model}"
    return model


def forbidden_hint(provider: str) -> str:
    return PROVIDERS.get(provider, PROVIDERS['generic'])['hint']


@dataclass
class AppConfig:
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    model: str = DEFAULT_MODEL
    temperature: float = 0.2
    output_format: str = "plain"
    tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS

    system_prompt: str = ""
    log_level: str = "INFO"
    use_color: bool = True

    @classmethod
    def load(cls, cli_args: Optional[Dict[str, Any]] = None) -> 'AppConfig':
        load_dotenv()
        config = cls()

        env_map = {
            'base_url': 'BANJIN_BASE_URL',
            'api_key': 'BANJIN_API_KEY',
            'model': 'BANJIN_MODEL',
            'temperature': 'BANJIN_TEMPERATURE',
            'output_format': 'BANJIN_OUTPUT_FORMAT',
            'tool_timeout_seconds': 'BANJIN_TOOL_TIMEOUT',
            'log_level': 'BANJIN_LOG_LEVEL',
        }
        for key, var in env_map.items():
            value = (os.getenv(var) or "").strip()
            if value:
                config._set_coerced(key, value)

        if cli_args:
            if cli_args.get('system_prompt_file'):
                prompt_path = pathlib.Path(cli_args['system_prompt_file'])
                if prompt_path.exists():
                    try:
                        config.system_prompt = prompt_path.read_text(encoding='utf-8')
                    except (OSError, IOError) as e:
                        logger.warning("Could not read system prompt file: %s", e)

            for key in ['base_url', 'model', 'temperature', 'output_format',
                        'tool_timeout_seconds', 'system_prompt', 'log_level', 'use_color']:
                if key in cli_args and cli_args[key] is not None:
                    setattr(config, key, cli_args[key])

        if (not cli_args or cli_args.get('use_color') is None) and os.getenv('NO_COLOR'):
            config.use_color = False

        config.validate()
        return config

    def _set_coerced(self, key: str, raw: str) -> None:
        kind = {f.name: f.type for f in fields(self)}[key]
        try:
            if kind in (float, 'float'):
                setattr(self, key, float(raw))
            else:
                setattr(self, key, raw)
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", key, raw)

    def validate(self) -> None:
        if self.tool_timeout_seconds < 0:
            raise ValueError("tool_timeout_seconds must be >= 0 (0 disables the timeout)")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {', '.join(OUTPUT_FORMATS)}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0 and 2")


SESSION_FIELDS = ('model', 'temperature', 'output_format', 'tool_timeout_seconds')


@dataclass
class SessionConfig:
    """In-memory overrides for one session, seeded from the persisted config.

    Setters validate their input; ``reset`` restores a field to the value the
    session was started with. Nothing here is written back to disk.
    """

    defaults: AppConfig
    model: str = ""
    temperature: float = 0.0
    output_format: str = "plain"
    tool_timeout_seconds: float = 0

    @classmethod
    def from_app_config(cls, config: AppConfig) -> 'SessionConfig':
        snapshot = copy.deepcopy(config)
        return cls(
            defaults=snapshot,
            model=snapshot.model,
            temperature=snapshot.temperature,
            output_format=snapshot.output_format,
            tool_timeout_seconds=snapshot.tool_timeout_seconds,
        )

    @property
    def base_url(self) -> str:
        return self.defaults.base_url

    @property
    def api_key(self) -> str:
        return self.defaults.api_key

    def set_model(self, model: str) -> None:
        model = (model or "").strip()
        if not model:
            raise ValueError("model name must not be empty")
        self.model = model

    def set_temperature(self, value: float) -> None:
        value = float(value)
        if not 0.0 <= value <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        self.temperature = value

    def set_output_format(self, value: str) -> None:
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"output format must be one of {', '.join(OUTPUT_FORMATS)}")
        self.output_format = value

    def set_tool_timeout(self, seconds: float) -> None:
        seconds = float(seconds)
        if seconds < 0:
            raise ValueError("timeout must be a non-negative number (0 = disabled)")
        self.tool_timeout_seconds = seconds

    def reset(self, name: str) -> None:
        if name not in SESSION_FIELDS:
            raise KeyError(name)
        setattr(self, name, getattr(self.defaults, name))


@dataclass(frozen=True)
class ToolServerConfig:
    name: str
    transport: str  # 'stdio' | 'http'
    command: str = ""
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    url: str = ""

    @classmethod
    def from_dict(cls, name: str, raw: Dict[str, Any]) -> 'ToolServerConfig':
        if not isinstance(raw, dict):
            raise ValueError(f"[{name}] server entry must be an object")

        url = raw.get("url")
        if url:
            if not isinstance(url, str):
                raise ValueError(f"[{name}] 'url' must be a string")
            return cls(name=name, transport="http", url=url)

        cmd = raw.get("command", "")
        if not isinstance(cmd, str) or not cmd.strip():
            raise ValueError(f"[{name}] Invalid command in config")

        args = raw.get("args", [])
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ValueError(f"[{name}] 'args' must be a list of strings")

        env = raw.get("env")
        if env is not None:
            if not isinstance(env, dict):
                raise ValueError(f"[{name}] 'env' must be a dictionary")
            if not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
                raise ValueError(f"[{name}] env keys and values must be strings")

        return cls(name=name, transport="stdio", command=cmd.strip(), args=list(args), env=env)


def load_server_configs(config_path: pathlib.Path) -> List[ToolServerConfig]:
    if not config_path.exists():
        logger.info("No MCP server config at %s", config_path)
        return []

    with open(config_path, "r", encoding="utf-8") as f:
        config = json.load(f)

    raw_servers = config.get("mcpServers", {})
    if not isinstance(raw_servers, dict):
        raise ValueError(f"{config_path.name} must contain 'mcpServers' object (dict) if present")

    servers: List[ToolServerConfig] = []
    for name, raw in raw_servers.items():
        try:
            servers.append(ToolServerConfig.from_dict(name, raw))
        except ValueError as e:
            logger.warning("Skipping MCP server: %s", e)
    return servers


def load_system_context(config_dir: pathlib.Path) -> str:
    context_file = config_dir / "context.md"
    if not context_file.exists():
        return ""
    try:
        return context_file.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning("Could not read %s: %s", context_file, e)
        return ""
