import os
import yaml
import keyring

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"

KEYRING_SERVICE = "fitness-engine"


class YamlConfig:
    """Engine settings stored in YAML, with the admin key kept in the keyring.

    With ``ENCRYPT_SETTINGS=1`` secret values are written to the system
    keyring and the YAML file only records that a secret exists. Environment
    variables listed in ``ENV_OVERRIDES`` win over the file.
    """

    SECRET_KEYS = ("admin_api_key",)
    ENV_OVERRIDES = {
        "FITNESS_LOG_FORMAT": "log_format",
        "FITNESS_LOG_LEVEL": "log_level",
        "FITNESS_TIMEZONE": "timezone",
        "FITNESS_ADMIN_API_KEY": "admin_api_key",
    }

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.use_keyring = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _read_secret(self, key: str) -> str | None:
        return keyring.get_password(KEYRING_SERVICE, key)

    def load(self) -> dict:
        """Return the raw file contents with secrets resolved."""
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not self.use_keyring:
            return data
        for key in self.SECRET_KEYS:
            if key not in data:
                continue
            secret = self._read_secret(key)
            if secret is None:
                del data[key]
            else:
                data[key] = secret
        return data

    def save(self, data: dict) -> None:
        out = dict(data)
        if self.use_keyring:
            for key in self.SECRET_KEYS:
                if out.get(key) is None:
                    continue
                keyring.set_password(KEYRING_SERVICE, key, str(out[key]))
                out[key] = True
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)

    def settings(self) -> SettingsSchema:
        """Validated settings with environment overrides applied."""
        data = self.load()
        for env, key in self.ENV_OVERRIDES.items():
            value = os.environ.get(env)
            if value:
                data[key] = value
        return validate_settings(data)


def load_settings(path: str = "settings.yaml") -> SettingsSchema:
    return YamlConfig(path).settings()
