import os
import yaml
import keyring

from settings_schema import SyncSettings, validate_settings

APP_VERSION = "0.1.0"


class YamlConfig:
    """Load and save settings to a YAML file with optional keyring storage."""

    SENSITIVE_KEYS = {
        "api_token",
    }

    def __init__(self, path: str = "kraftlog.yaml") -> None:
        self.path = path
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"
        self.service = "kraftlog"

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if self.encrypt:
            for key in list(data.keys()):
                if key in self.SENSITIVE_KEYS:
                    secret = keyring.get_password(self.service, key)
                    if secret is not None:
                        data[key] = secret
                    else:
                        data.pop(key, None)
        return data

    def save(self, data: dict) -> None:
        out = {k: v for k, v in data.items() if v is not None}
        if self.encrypt:
            for key in self.SENSITIVE_KEYS:
                if key in out:
                    keyring.set_password(self.service, key, str(out[key]))
                    out[key] = True
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)


ENV_OVERRIDES = {
    "KRAFTLOG_API_URL": "api_url",
    "KRAFTLOG_DB_PATH": "db_path",
}


def load_settings(path: str = "kraftlog.yaml") -> SyncSettings:
    """Read the YAML settings, apply environment overrides and validate."""
    data = YamlConfig(path).load()
    for env, key in ENV_OVERRIDES.items():
        value = os.environ.get(env)
        if value:
            data[key] = value
    return validate_settings(data)
