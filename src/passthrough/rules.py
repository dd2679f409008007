"""
Passthrough rule types.

A PassthroughConfig is an ordered, de-duplicated list of cgroup device-class
allows and bind mounts plus a set of sandbox overrides. It serialises to the
literal directive block appended to a container's configuration file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from .templates import TemplateLoader

BLOCK_BEGIN = "# BEGIN gpu-passthrough"
BLOCK_END = "# END gpu-passthrough"


@dataclass(frozen=True)
class DeviceClassAllow:
    """cgroup v2 permission for every device node sharing a major number."""

    major: int
    access: str = "rwm"
    minor: str = "*"
    kind: str = "c"

    def directive(self) -> str:
        return f"lxc.cgroup2.devices.allow: {self.kind} {self.major}:{self.minor} {self.access}"


@dataclass(frozen=True)
class BindMount:
    """Bind mount of a host path into the container root."""

    host_path: str
    container_path: str    # relative to the container rootfs, e.g. dev/dri/card0
    optional: bool = True
    create_kind: Optional[str] = "file"   # "file", "dir" or None

    @property
    def options(self) -> str:
        opts = ["bind"]
        if self.optional:
            opts.append("optional")
        if self.create_kind:
            opts.append(f"create={self.create_kind}")
        return ",".join(opts)

    def directive(self) -> str:
        return f"lxc.mount.entry: {self.host_path} {self.container_path} none {self.options} 0 0"


PassthroughRule = Union[DeviceClassAllow, BindMount]


class SandboxOverride(Enum):
    """Named relaxations of container isolation."""

    # Disable the mandatory-access-control profile for the container
    APPARMOR_UNCONFINED = "apparmor_unconfined"
    # Hide the host's AppArmor "enabled" parameter from the container.
    # Works around nested Docker failing on platform major version 9.
    MASK_APPARMOR_PARAMETER = "mask_apparmor_parameter"

    def directives(self) -> List[str]:
        if self is SandboxOverride.APPARMOR_UNCONFINED:
            return ["lxc.apparmor.profile: unconfined"]
        mount = BindMount(
            "/dev/null", "sys/module/apparmor/parameters/enabled",
            optional=False, create_kind=None,
        )
        return [mount.directive()]


@dataclass
class PassthroughConfig:
    """Ordered isolation rule set for one GPU in one container."""

    vendor: str
    pci_address: str
    rules: List[PassthroughRule] = field(default_factory=list)
    overrides: List[SandboxOverride] = field(default_factory=list)

    def add(self, rule: PassthroughRule) -> bool:
        """Append a rule unless an equal one is already present."""
        if rule in self.rules:
            return False
        self.rules.append(rule)
        return True

    def add_override(self, override: SandboxOverride) -> bool:
        if override in self.overrides:
            return False
        self.overrides.append(override)
        return True

    @property
    def device_class_allows(self) -> List[DeviceClassAllow]:
        return [r for r in self.rules if isinstance(r, DeviceClassAllow)]

    @property
    def bind_mounts(self) -> List[BindMount]:
        return [r for r in self.rules if isinstance(r, BindMount)]

    @property
    def allowed_majors(self) -> List[int]:
        return [r.major for r in self.device_class_allows]

    def directives(self) -> List[str]:
        """Directive lines in rule order, overrides last."""
        lines = [rule.directive() for rule in self.rules]
        for override in self.overrides:
            lines.extend(override.directives())
        return lines

    def render(self, loader: Optional["TemplateLoader"] = None) -> str:
        """Render the marked directive block for a container config file."""
        from .templates import get_template_loader

        loader = loader or get_template_loader()
        return loader.render(
            "lxc-gpu.conf.j2",
            begin_marker=BLOCK_BEGIN,
            end_marker=BLOCK_END,
            vendor=self.vendor,
            pci_address=self.pci_address,
            directives=self.directives(),
        )

    def to_dict(self) -> dict:
        return {
            "vendor": self.vendor,
            "pci_address": self.pci_address,
            "directives": self.directives(),
            "overrides": [o.value for o in self.overrides],
        }
