"""Deployment environment policy for automatic suspension."""

import logging

from capguard.config import Settings, get_settings

logger = logging.getLogger(__name__)


class EnvironmentPolicy:
    """
    Decides whether automatic suspension applies to an environment.

    Non-production environments (dev, staging) are exempt from automatic
    suspension. Manual suspension is unaffected.
    """

    def __init__(
        self,
        disabled_environments: list[str] | None = None,
        default_environment: str | None = None,
        config: Settings | None = None,
    ) -> None:
        """
        Initialize the policy.

        Args:
            disabled_environments: Environments exempt from auto-suspension
            default_environment: Environment assumed when a project has none
            config: Settings supplying the values not passed explicitly
        """
        s = config or get_settings()
        exempt = disabled_environments if disabled_environments is not None else s.auto_suspend_disabled_environments
        self._disabled = {env.strip().lower() for env in exempt}
        self._default = (default_environment or s.default_environment).strip().lower()

    def resolve(self, environment: str | None) -> str:
        """Normalize an environment name, falling back to the default."""
        if not environment or not environment.strip():
            return self._default
        return environment.strip().lower()

    def is_auto_suspend_enabled(self, environment: str | None) -> bool:
        """Check whether projects in this environment may be auto-suspended."""
        return self.resolve(environment) not in self._disabled
