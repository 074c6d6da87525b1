import os
import yaml
import keyring

DEFAULT_DB_PATH = "lifting.db"


class YamlConfig:
    """Load and save settings to a YAML file with optional encryption."""

    SENSITIVE_KEYS = {
        "session_user_id",
    }

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"
        self.service = "lifting"

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
        out = dict(data)
        if self.encrypt:
            for key in self.SENSITIVE_KEYS:
                if key in out:
                    if out[key] is None:
                        out.pop(key)
                        continue
                    keyring.set_password(self.service, key, str(out[key]))
                    out[key] = True
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)

    def get(self, key: str, default=None):
        return self.load().get(key, default)

    def update(self, **values) -> dict:
        """Merge ``values`` into the stored settings and persist them."""
        data = self.load()
        data.update(values)
        self.save(data)
        return data

    def db_path(self) -> str:
        """Database location; ``LIFTING_DB`` overrides the stored value."""
        return os.environ.get("LIFTING_DB") or self.get("db_path", DEFAULT_DB_PATH)
