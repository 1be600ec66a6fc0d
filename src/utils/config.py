# src/utils/config.py

from dataclasses import dataclass, asdict, fields
from typing import Any, Dict
from utils.errors import ConfigurationError


@dataclass(frozen=True)
class ArchDetectorConfig:
    """Startup parameters for the line transform and the arch tracker.

    These values are fixed once the detector is built. The state space
    tables are derived from them, so changing a parameter means building
    a new detector.
    """
    theta_resolution_degrees: int = 10    # Angle bin spacing of the line transform
    rho_resolution: int = 10              # Offset bin spacing in pixels
    angle_degrees_margin: int = 20        # Search window around the horizon normal
    rho_distance_min: int = 4             # Minimum bin distance between the two lines
    rho_distance_max: int = 11            # Maximum bin distance between the two lines
    allow_line_outside_image: bool = False
    normalize_accumulated_cost: bool = True

    def validate(self) -> None:
        """Check parameter ranges that do not depend on image geometry.

        Raises:
            ConfigurationError: if any parameter is out of range
        """
        if self.theta_resolution_degrees <= 0 or self.theta_resolution_degrees > 90:
            raise ConfigurationError(
                f"theta_resolution_degrees must be in (0, 90], got {self.theta_resolution_degrees}")
        if self.rho_resolution <= 0:
            raise ConfigurationError(f"rho_resolution must be positive, got {self.rho_resolution}")
        if self.angle_degrees_margin < 0:
            raise ConfigurationError(
                f"angle_degrees_margin must not be negative, got {self.angle_degrees_margin}")
        if self.rho_distance_min < 1:
            raise ConfigurationError(f"rho_distance_min must be at least 1, got {self.rho_distance_min}")
        if self.rho_distance_min > self.rho_distance_max:
            raise ConfigurationError(
                f"rho_distance_min ({self.rho_distance_min}) exceeds "
                f"rho_distance_max ({self.rho_distance_max})")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "ArchDetectorConfig":
        """Build a config from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration parameters: {sorted(unknown)}")
        config = cls(**values)
        config.validate()
        return config
