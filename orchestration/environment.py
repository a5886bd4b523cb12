import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config.settings import BotSettings, ConfigurationError
from monitoring.order_auditor import OrderAuditor
from risk.safety_policy import SafetyPolicy


logger = logging.getLogger(__name__)


@dataclass
class EnvironmentProfile:
    name: str
    display_name: str
    is_real_money: bool
    base_url: str
    stream_url: str
    api_key: Optional[str] = field(default=None, repr=False)
    api_secret: Optional[str] = field(default=None, repr=False)
    max_order_value: float = 0.0
    max_positions: int = 0
    required_keys: Tuple[str, ...] = ('api_key', 'api_secret')
    min_key_length: int = 64

    @classmethod
    def from_section(cls, name: str, section: Dict[str, Any], settings: BotSettings) -> 'EnvironmentProfile':
        is_real_money = bool(section.get('is_real_money', name == 'mainnet'))
        trading = settings.trading
        default_value = trading.max_order_size if is_real_money else 1_000_000.0
        default_positions = trading.max_positions if is_real_money else 50
        return cls(
            name=name,
            display_name=section.get('display_name') or name,
            is_real_money=is_real_money,
            base_url=str(section.get('base_url') or ''),
            stream_url=str(section.get('stream_url') or ''),
            api_key=section.get('api_key') or None,
            api_secret=section.get('api_secret') or None,
            max_order_value=float(section.get('max_order_value') or default_value),
            max_positions=int(section.get('max_positions') or default_positions),
            required_keys=tuple(section.get('required_keys') or ('api_key', 'api_secret')),
            min_key_length=int(section.get('min_key_length') or 64),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def describe(self) -> Dict[str, Any]:
        """Secret-free view for status reports."""
        return {
            'name': self.name,
            'display_name': self.display_name,
            'is_real_money': self.is_real_money,
            'base_url': self.base_url,
            'stream_url': self.stream_url,
            'has_credentials': self.has_credentials,
            'max_order_value': self.max_order_value,
            'max_positions': self.max_positions,
        }


class EnvironmentManager:
    """Holds the environment profiles and the active one.

    Switching validates the target completely before the active profile
    changes, so a failed switch leaves the previous environment in place.
    """

    def __init__(self, settings: BotSettings, active: Optional[str] = None):
        self.settings = settings
        self.profiles: Dict[str, EnvironmentProfile] = {
            name: EnvironmentProfile.from_section(name, section, settings)
            for name, section in settings.environments.items()
            if isinstance(section, dict)
        }
        self._active: Optional[EnvironmentProfile] = None
        self._requested = active or settings.default_environment
        # One policy per real-money profile so daily loss survives switching away and back
        self._safety_policies: Dict[str, SafetyPolicy] = {}

    @property
    def active(self) -> EnvironmentProfile:
        if self._active is None:
            raise ConfigurationError('no environment has been activated')
        return self._active

    @property
    def is_active(self) -> bool:
        return self._active is not None

    def validate(self, name: str) -> List[str]:
        profile = self.profiles.get(name)
        if profile is None:
            return [f"unknown environment '{name}'"]
        errors: List[str] = []
        if not self.settings.trading.simulation_mode:
            for key in profile.required_keys:
                value = getattr(profile, key, None)
                if not value:
                    errors.append(f'{name}: missing {key}')
                elif len(str(value)) < profile.min_key_length:
                    errors.append(f'{name}: {key} shorter than {profile.min_key_length} characters')
        if not profile.base_url.startswith('https://'):
            errors.append(f'{name}: base_url must use https://')
        if not profile.stream_url.startswith('wss://'):
            errors.append(f'{name}: stream_url must use wss://')
        if profile.max_order_value <= 0:
            errors.append(f'{name}: max_order_value must be positive')
        if profile.max_positions <= 0:
            errors.append(f'{name}: max_positions must be positive')
        return errors

    def activate(self) -> EnvironmentProfile:
        """Activate the configured default environment at launch."""
        return self.switch(self._requested)

    def switch(self, name: str) -> EnvironmentProfile:
        errors = self.validate(name)
        if errors:
            current = self._active.name if self._active else None
            logger.error(
                "Environment switch to %s rejected (active stays %s): %s",
                name,
                current,
                '; '.join(errors),
            )
            raise ConfigurationError('; '.join(errors))
        previous = self._active
        self._active = self.profiles[name]
        if previous is None:
            logger.info("Environment activated: %s", self._active.display_name)
        else:
            logger.warning("Environment switched: %s -> %s", previous.name, name)
        if self._active.is_real_money:
            logger.warning("REAL MONEY environment active: %s", self._active.display_name)
        return self._active

    def build_safety_policy(self, auditor: Optional[OrderAuditor] = None) -> Optional[SafetyPolicy]:
        """Safety policy for the active profile, or None on simulated money.

        The policy is created on first use and reused afterwards.
        """
        profile = self.active
        if not profile.is_real_money:
            return None
        policy = self._safety_policies.get(profile.name)
        if policy is None:
            auditor = auditor or OrderAuditor(self.settings.safety.audit_log, environment=profile.name)
            policy = SafetyPolicy.from_settings(
                self.settings,
                max_order_value=min(profile.max_order_value, self.settings.trading.max_order_size),
                auditor=auditor,
            )
            self._safety_policies[profile.name] = policy
        return policy

    def info(self) -> Dict[str, Any]:
        return {
            'active': self._active.describe() if self._active else None,
            'available': {
                name: {'valid': not self.validate(name), **profile.describe()}
                for name, profile in self.profiles.items()
            },
            'simulation_mode': self.settings.trading.simulation_mode,
        }

    def recommendations(self) -> List[str]:
        tips: List[str] = []
        if self._active is None:
            return ['activate an environment before trading']
        if self._active.is_real_money:
            trading = self.settings.trading
            if trading.base_order_size > 50:
                tips.append('consider a base order size of 50 or less on mainnet')
            if trading.max_positions > 5:
                tips.append('consider at most 5 concurrent positions on mainnet')
            if not trading.use_oco:
                tips.append('enable OCO brackets so exits are atomic')
        else:
            tips.append('testnet fills do not reflect mainnet liquidity')
            mainnet_errors = self.validate('mainnet') if 'mainnet' in self.profiles else ['no mainnet profile']
            if mainnet_errors:
                tips.append('mainnet is not ready: ' + '; '.join(mainnet_errors))
        return tips
