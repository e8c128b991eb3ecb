"""
Configuration management using Pydantic Settings.

Architecture Decision: Why pydantic-settings?
- Type-safe configuration with validation
- Supports multiple sources (YAML, env vars, defaults)
- Easy to test with different configurations

Connection profiles live in the same YAML document as the preferences, so
one file describes every server the user works with.
"""

import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from tikker.domain.models import AuthConfig, Profile

logger = logging.getLogger(__name__)


class AppPreferences(BaseModel):
    """
    User preferences stored in settings.yaml.
    """
    # Timer display
    show_seconds: bool = True
    show_notifications: bool = True
    notification_interval: int = Field(default=30, ge=1, description="Minutes between 'still running' reminders")

    # Auto refresh
    auto_refresh_enabled: bool = True
    auto_refresh_interval: int = Field(default=30, ge=5, description="Seconds between cache refreshes")
    sync_on_startup: bool = True

    # Remote requests
    request_timeout: float = Field(default=15.0, gt=0, description="Seconds before a request counts as a transport failure")
    ignore_ssl_errors: bool = False


class SettingsDocument(BaseModel):
    """The part of the settings that is saved, exported and imported"""
    current_profile_id: Optional[str] = None
    profiles: List[Profile] = Field(default_factory=list)
    preferences: AppPreferences = Field(default_factory=AppPreferences)


class Settings(BaseSettings):
    """
    Application settings with multiple sources:
    1. Default values (hardcoded)
    2. YAML config file
    3. Environment variables and constructor arguments (highest priority)

    A YAML key is only applied when the field was not set explicitly.
    """
    model_config = SettingsConfigDict(
        env_prefix='TIKKER_',
        env_file='.env',
        env_file_encoding='utf-8'
    )

    # Application paths
    app_name: str = "Tikker"
    config_dir: Optional[Path] = None
    data_dir: Optional[Path] = None

    # Local storage
    database_url: Optional[str] = None

    # Connection profiles
    profiles: List[Profile] = Field(default_factory=list)
    current_profile_id: Optional[str] = None

    # User preferences
    preferences: AppPreferences = Field(default_factory=AppPreferences)

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._init_paths()
        self._load_yaml_config()

    def _init_paths(self):
        """Initialize default paths based on OS"""
        if self.config_dir is None:
            if os.name == 'nt':  # Windows
                base = Path(os.getenv('APPDATA'))
            else:  # Linux/Mac
                base = Path(os.getenv('XDG_CONFIG_HOME', Path.home() / '.config'))
            self.config_dir = base / self.app_name.lower()

        if self.data_dir is None:
            if os.name == 'nt':  # Windows
                base = Path(os.getenv('APPDATA'))
            else:  # Linux/Mac
                base = Path.home() / '.local' / 'share'
            self.data_dir = base / self.app_name.lower()

        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def settings_file(self) -> Path:
        return self.config_dir / "settings.yaml"

    def _load_yaml_config(self):
        """Load profiles and preferences from the YAML document"""
        if not self.settings_file.exists():
            return

        with open(self.settings_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        document = SettingsDocument.model_validate(config_data)
        for field in document.model_fields_set:
            if field not in self.model_fields_set:
                setattr(self, field, getattr(document, field))

    def _document(self) -> "SettingsDocument":
        return SettingsDocument(
            current_profile_id=self.current_profile_id,
            profiles=self.profiles,
            preferences=self.preferences,
        )

    def _apply(self, document: "SettingsDocument") -> None:
        self.current_profile_id = document.current_profile_id
        self.profiles = list(document.profiles)
        self.preferences = document.preferences

    def save(self):
        """Write profiles and preferences back to settings.yaml"""
        with open(self.settings_file, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self._document().model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
        logger.debug(f"Settings saved to {self.settings_file}")

    def reset(self):
        """Back to defaults: no profiles, default preferences"""
        self._apply(SettingsDocument())
        self.save()

    def export_settings(self) -> str:
        """Profiles and preferences as an indented JSON document"""
        return self._document().model_dump_json(indent=2)

    def import_settings(self, text: str) -> bool:
        """
        Replace profiles and preferences with an exported document.

        Returns False and changes nothing if the text is not a valid document.
        """
        try:
            document = SettingsDocument.model_validate_json(text)
        except ModelValidationError as e:
            logger.warning(f"Rejected settings import: {e}")
            return False
        if document.current_profile_id and not any(p.id == document.current_profile_id for p in document.profiles):
            logger.warning(f"Rejected settings import: unknown current profile {document.current_profile_id}")
            return False
        self._apply(document)
        self.save()
        return True

    def get_db_url(self) -> str:
        """Get database URL, creating default if not set"""
        if self.database_url:
            return self.database_url

        db_path = self.data_dir / 'tikker.db'
        return f"sqlite+aiosqlite:///{db_path}"

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    @property
    def current_profile(self) -> Optional[Profile]:
        if not self.current_profile_id:
            return None
        return self.get_profile(self.current_profile_id)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        return next((p for p in self.profiles if p.id == profile_id), None)

    def add_profile(self, name: str, auth: AuthConfig, auto_connect: bool = False) -> Profile:
        profile = Profile(id=uuid.uuid4().hex, name=name, auth=auth, auto_connect=auto_connect)
        self.profiles.append(profile)
        if self.current_profile_id is None:
            self.current_profile_id = profile.id
        self.save()
        return profile

    def update_profile(self, profile_id: str, **updates) -> Optional[Profile]:
        profile = self.get_profile(profile_id)
        if profile is None:
            return None
        updated = profile.model_copy(update=updates)
        self.profiles = [updated if p.id == profile_id else p for p in self.profiles]
        self.save()
        return updated

    def delete_profile(self, profile_id: str) -> None:
        self.profiles = [p for p in self.profiles if p.id != profile_id]
        if self.current_profile_id == profile_id:
            self.current_profile_id = self.profiles[0].id if self.profiles else None
        self.save()

    def set_current_profile(self, profile_id: str) -> bool:
        """Select a profile; unknown ids are ignored"""
        if self.get_profile(profile_id) is None:
            return False
        self.current_profile_id = profile_id
        self.update_profile(profile_id, last_used=datetime.now())
        return True


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from file"""
    global _settings
    _settings = Settings()
    return _settings
