"""YAML configuration loader for ledgerpipe.

Loads the config files from the config/ directory:
  settings.yaml (optional), accounts.yaml, categories.yaml, rules.yaml
"""

from pathlib import Path

import yaml

DEFAULT_SETTINGS: dict = {
    "import": {
        "image_max_bytes": 500 * 1024,
        "classification_limit": 500,
    },
    "completion": {
        "model": "claude-sonnet-4-20250514",
        "vision_model": "claude-sonnet-4-20250514",
        "timeout_seconds": 60.0,
        "max_tokens": 8000,
    },
}


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._settings: dict | None = None
        self._organizations: list[dict] | None = None
        self._categories: dict | None = None
        self._rules: list[dict] | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def settings(self) -> dict:
        """settings.yaml merged over DEFAULT_SETTINGS, one level deep."""
        if self._settings is None:
            merged = {section: dict(values) for section, values in DEFAULT_SETTINGS.items()}
            if (self.config_dir / "settings.yaml").exists():
                data = self._load("settings.yaml")
                if not isinstance(data, dict):
                    raise ValueError("settings.yaml must be a mapping")
                for section, values in data.items():
                    if isinstance(values, dict):
                        merged.setdefault(section, {}).update(values)
            self._settings = merged
        return self._settings

    @property
    def image_max_bytes(self) -> int:
        return int(self.settings["import"]["image_max_bytes"])

    @property
    def classification_limit(self) -> int:
        return int(self.settings["import"]["classification_limit"])

    @property
    def completion(self) -> dict:
        return self.settings["completion"]

    @property
    def organizations(self) -> list[dict]:
        if self._organizations is None:
            data = self._load("accounts.yaml")
            self._organizations = (
                data.get("organizations", []) if isinstance(data, dict) else data
            )
        return self._organizations

    @property
    def accounts(self) -> list[dict]:
        """Flat list of accounts, each tagged with its organization_id."""
        result: list[dict] = []
        for org in self.organizations:
            for acct in org.get("accounts", []):
                entry = dict(acct)
                entry["organization_id"] = org["id"]
                result.append(entry)
        return result

    def account_by_id(self, account_id: str) -> dict | None:
        for acct in self.accounts:
            if acct.get("id") == account_id:
                return acct
        return None

    @property
    def taxonomy(self) -> dict:
        if self._categories is None:
            data = self._load("categories.yaml")
            if not isinstance(data, dict):
                raise ValueError("categories.yaml must be a mapping")
            self._categories = data
        return self._categories

    def categories_for(self, organization_id: str) -> list[dict]:
        """Categories for an organization; entries without organization apply to all."""
        return [
            c for c in self.taxonomy.get("categories", [])
            if c.get("organization", organization_id) == organization_id
        ]

    def cost_centers_for(self, organization_id: str) -> list[dict]:
        return [
            c for c in self.taxonomy.get("cost_centers", [])
            if c.get("organization", organization_id) == organization_id
        ]

    @property
    def rules(self) -> list[dict]:
        if self._rules is None:
            data = self._load("rules.yaml")
            self._rules = data.get("rules", []) if isinstance(data, dict) else data
        return self._rules
