"""
Protocol Parameters and Configuration
=====================================
Immutable configuration for one protocol run.

- ParameterSet: CKKS / FHEW parameters passed at startup (never persisted)
- ArtifactNames: logical artifact name -> store key mapping
- ProtocolConfig: both of the above, loadable from a JSON file

Default values match OpenFHE's scheme-switching serialization example:
ring dimension 64, batch size 4, depth 13 + log2(batch), 25-bit FHEW modulus.
These are TOY parameters (no security level set) meant for correctness runs.
"""

import json
import math
from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ConfigurationError


DEFAULT_BASE_G = 1 << 18

# Logical names of every artifact exchanged between publisher and worker
CONTEXT = "context"
PUBLIC_KEY = "public-key"
MULT_KEY = "mult-key"
ROTATION_KEY = "rotation-key"
SWITCH_KEY = "switch-key"
INITIAL_CIPHERTEXT = "initial-ciphertext"
COMPARISON_CONTEXT = "comparison-context"
REFRESH_KEY = "refresh-key"
KEY_SWITCH_KEY = "key-switch-key"
RESULT_CIPHERTEXT = "result-ciphertext"

FIXED_ARTIFACT_NAMES: Tuple[str, ...] = (
    CONTEXT,
    PUBLIC_KEY,
    MULT_KEY,
    ROTATION_KEY,
    SWITCH_KEY,
    INITIAL_CIPHERTEXT,
    COMPARISON_CONTEXT,
    REFRESH_KEY,
    KEY_SWITCH_KEY,
    RESULT_CIPHERTEXT,
)


def _is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


@dataclass(frozen=True)
class ParameterSet:
    """
    Cryptographic configuration for the CKKS context and its FHEW companion.

    Attributes:
        ring_dim: CKKS ring dimension (power of two)
        batch_size: Number of CKKS slots used (power of two, <= ring_dim / 2)
        base_depth: Depth consumed by the comparison circuit itself;
            the total multiplicative depth adds log2(batch_size)
        scale_mod_size: Bit size of the CKKS scaling moduli
        first_mod_size: Bit size of the first CKKS modulus
        log_q_lwe: Bit width of the FHEW ciphertext modulus
        one_hot: Return a one-hot argmin indicator
        scale_sign: Scaling applied to differences before the FHEW sign test
        base_g_list: baseG values that need a bootstrapping key bundle
    """
    ring_dim: int = 64
    batch_size: int = 4
    base_depth: int = 13
    scale_mod_size: int = 50
    first_mod_size: int = 60
    log_q_lwe: int = 25
    one_hot: bool = True
    scale_sign: float = 512.0
    base_g_list: Tuple[int, ...] = (DEFAULT_BASE_G,)

    @property
    def mult_depth(self) -> int:
        """Total multiplicative depth: base depth plus log2(batch size)"""
        return self.base_depth + int(math.log2(self.batch_size))

    @property
    def modulus_lwe(self) -> int:
        """FHEW ciphertext modulus"""
        return 1 << self.log_q_lwe

    def validate(self) -> 'ParameterSet':
        """
        Check the parameter combination before any context is generated.

        Raises:
            ConfigurationError: If any parameter is out of range
        """
        problems: List[str] = []

        if not _is_power_of_two(self.ring_dim):
            problems.append(f"ring_dim must be a power of two, got {self.ring_dim}")
        if not _is_power_of_two(self.batch_size):
            problems.append(f"batch_size must be a power of two, got {self.batch_size}")
        elif _is_power_of_two(self.ring_dim) and self.batch_size > self.ring_dim // 2:
            problems.append(
                f"batch_size {self.batch_size} exceeds ring_dim/2 = {self.ring_dim // 2}"
            )
        if self.base_depth < 1:
            problems.append(f"base_depth must be positive, got {self.base_depth}")
        if not 0 < self.scale_mod_size < self.first_mod_size:
            problems.append(
                f"scale_mod_size ({self.scale_mod_size}) must be positive and "
                f"smaller than first_mod_size ({self.first_mod_size})"
            )
        if self.first_mod_size > 60:
            problems.append(f"first_mod_size must be at most 60 bits, got {self.first_mod_size}")
        if not 2 <= self.log_q_lwe <= 32:
            problems.append(f"log_q_lwe must be within [2, 32], got {self.log_q_lwe}")
        if self.scale_sign <= 0:
            problems.append(f"scale_sign must be positive, got {self.scale_sign}")
        if not self.base_g_list:
            problems.append("base_g_list must name at least one baseG value")
        for base_g in self.base_g_list:
            if not _is_power_of_two(base_g):
                problems.append(f"baseG values must be powers of two, got {base_g}")
        if len(set(self.base_g_list)) != len(self.base_g_list):
            problems.append(f"base_g_list contains duplicates: {list(self.base_g_list)}")

        if problems:
            raise ConfigurationError("; ".join(problems), phase="CONTEXT_READY")
        return self

    def to_dict(self) -> dict:
        d = asdict(self)
        d['base_g_list'] = list(self.base_g_list)
        d['mult_depth'] = self.mult_depth
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ParameterSet':
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known - {'mult_depth'}
        if unknown:
            raise ConfigurationError(f"Unknown parameters: {sorted(unknown)}")
        values = {k: v for k, v in data.items() if k in known}
        if 'base_g_list' in values:
            values['base_g_list'] = tuple(int(b) for b in values['base_g_list'])
        return cls(**values)


@dataclass(frozen=True)
class ArtifactNames:
    """
    Mapping from logical artifact name to the key used by a store backend.

    The protocol only ever speaks logical names; a backend resolves them
    through this mapping, so renaming files or URLs never touches protocol code.
    """
    mapping: Dict[str, str] = field(default_factory=dict)
    refresh_key_template: str = "{base_g}-refresh-key"
    key_switch_key_template: str = "{base_g}-key-switch-key"

    def refresh_key_name(self, base_g: int) -> str:
        return self.refresh_key_template.format(base_g=base_g)

    def key_switch_key_name(self, base_g: int) -> str:
        return self.key_switch_key_template.format(base_g=base_g)

    def store_key(self, logical_name: str) -> str:
        """Resolve a logical name; unmapped names are used verbatim"""
        return self.mapping.get(logical_name, logical_name)

    def logical_name(self, store_key: str) -> str:
        """Reverse lookup, used when listing a backend"""
        for logical, key in self.mapping.items():
            if key == store_key:
                return logical
        return store_key

    def publisher_names(self, base_g_list) -> List[str]:
        """Every logical name the publisher writes, in publish order"""
        names = [
            CONTEXT,
            PUBLIC_KEY,
            MULT_KEY,
            ROTATION_KEY,
            SWITCH_KEY,
            COMPARISON_CONTEXT,
            REFRESH_KEY,
            KEY_SWITCH_KEY,
        ]
        for base_g in base_g_list:
            names.append(self.refresh_key_name(base_g))
            names.append(self.key_switch_key_name(base_g))
        names.append(INITIAL_CIPHERTEXT)
        return names

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'ArtifactNames':
        mapping = dict(data.get('mapping', {}))
        unknown = set(mapping) - set(FIXED_ARTIFACT_NAMES)
        if unknown:
            raise ConfigurationError(f"Unknown logical artifact names: {sorted(unknown)}")
        if len(set(mapping.values())) != len(mapping):
            raise ConfigurationError("Two logical artifacts map to the same store key")
        defaults = cls()
        return cls(
            mapping=mapping,
            refresh_key_template=data.get('refresh_key_template', defaults.refresh_key_template),
            key_switch_key_template=data.get('key_switch_key_template', defaults.key_switch_key_template)
        )


@dataclass(frozen=True)
class ProtocolConfig:
    """Startup configuration: parameters, artifact naming and verification tolerance"""
    params: ParameterSet = field(default_factory=ParameterSet)
    names: ArtifactNames = field(default_factory=ArtifactNames)
    tolerance: float = 0.05

    def with_overrides(self, **param_overrides) -> 'ProtocolConfig':
        """Return a copy whose ParameterSet has the given non-None fields replaced"""
        overrides = {k: v for k, v in param_overrides.items() if v is not None}
        if not overrides:
            return self
        try:
            params = replace(self.params, **overrides)
        except TypeError as e:
            raise ConfigurationError(f"Invalid parameter override: {e}") from e
        return replace(self, params=params)

    def to_dict(self) -> dict:
        return {
            'params': self.params.to_dict(),
            'names': self.names.to_dict(),
            'tolerance': self.tolerance
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ProtocolConfig':
        return cls(
            params=ParameterSet.from_dict(data.get('params', {})),
            names=ArtifactNames.from_dict(data.get('names', {})),
            tolerance=float(data.get('tolerance', 0.05))
        )

    @classmethod
    def from_file(cls, path: str) -> 'ProtocolConfig':
        """
        Load configuration from a JSON file.

        Raises:
            ConfigurationError: If the file is missing or not valid JSON
        """
        config_path = Path(path)
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Config file not found: {config_path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Config file {config_path} is not valid JSON: {e}") from e
        return cls.from_dict(data)

    def save(self, path: str):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(path: Optional[str] = None) -> ProtocolConfig:
    """Load a config file if given, else the defaults"""
    if path is None:
        return ProtocolConfig()
    return ProtocolConfig.from_file(path)
