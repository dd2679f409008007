"""
Parsers for vendor tool output.

Several vendor tools exit 0 without finding a device, so success is
decided by matching their output here. Every function is pure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

ROCM_AGENT_LINE_RE = re.compile(r"^\s*Agent\s+\d+\b", re.IGNORECASE)
ROCM_FIELD_RE = re.compile(r"^\s*(?P<key>[A-Za-z][A-Za-z ]*?):\s*(?P<value>.*?)\s*$")
ROCM_VRAM_TOTAL_RE = re.compile(r"VRAM Total Memory \(B\):\s*(\d+)", re.IGNORECASE)
NVIDIA_LIST_RE = re.compile(r"^GPU\s+(?P<index>\d+):\s*(?P<name>.+?)(?:\s+\(UUID:\s*(?P<uuid>[^)]+)\))?\s*$")
NVIDIA_MEMORY_RE = re.compile(r"^\s*(\d+)\s*MiB\s*$")


def parse_proc_modules(text: str) -> Set[str]:
    """Names of loaded kernel modules from /proc/modules (or lsmod) output."""
    modules = set()
    for line in text.splitlines():
        parts = line.split()
        if parts and parts[0] != "Module":
            modules.add(parts[0])
    return modules


@dataclass(frozen=True)
class RocmAgent:
    index: int
    name: str = ""
    marketing_name: str = ""
    device_type: str = ""


def parse_rocm_agents(text: str) -> List[RocmAgent]:
    """Agents listed by rocminfo, in output order."""
    agents: List[RocmAgent] = []
    current: Optional[dict] = None

    for line in text.splitlines():
        if ROCM_AGENT_LINE_RE.match(line):
            if current is not None:
                agents.append(RocmAgent(**current))
            current = {"index": int(line.split()[1])}
            continue
        if current is None:
            continue

        match = ROCM_FIELD_RE.match(line)
        if not match:
            continue
        key, value = match.group("key"), match.group("value")
        if key == "Name" and "name" not in current:
            current["name"] = value
        elif key == "Marketing Name" and "marketing_name" not in current:
            current["marketing_name"] = value
        elif key == "Device Type" and "device_type" not in current:
            current["device_type"] = value

    if current is not None:
        agents.append(RocmAgent(**current))
    return agents


def count_rocm_agents(text: str, device_type: Optional[str] = "GPU") -> int:
    """
    Number of rocminfo agents of a device type.

    rocminfo always lists the CPU as an agent too. Output without any
    "Device Type" fields counts every agent.
    """
    agents = parse_rocm_agents(text)
    if device_type is None or not any(a.device_type for a in agents):
        return len(agents)
    return sum(1 for a in agents if a.device_type.upper() == device_type.upper())


def parse_rocm_vram_total(text: str) -> Optional[int]:
    """Total VRAM in bytes of the first GPU in `rocm-smi --showmeminfo vram`."""
    match = ROCM_VRAM_TOTAL_RE.search(text)
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class NvidiaGpu:
    index: int
    name: str
    uuid: Optional[str] = None


def parse_nvidia_smi_list(text: str) -> List[NvidiaGpu]:
    """GPUs from `nvidia-smi -L` ("GPU 0: NVIDIA ... (UUID: GPU-...)")."""
    gpus = []
    for line in text.splitlines():
        match = NVIDIA_LIST_RE.match(line.strip())
        if match:
            gpus.append(NvidiaGpu(int(match.group("index")), match.group("name"), match.group("uuid")))
    return gpus


def parse_nvidia_memory_total(text: str) -> List[int]:
    """Per-GPU memory in MiB from `--query-gpu=memory.total --format=csv,noheader`."""
    totals = []
    for line in text.splitlines():
        match = NVIDIA_MEMORY_RE.match(line)
        if match:
            totals.append(int(match.group(1)))
    return totals


def installed_packages(dpkg_output: str, prefixes: Iterable[str]) -> List[str]:
    """Installed package names from `dpkg -l` starting with any prefix."""
    prefixes = tuple(prefixes)
    found = []
    for line in dpkg_output.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] != "ii":
            continue
        name = parts[1].split(":", 1)[0]
        if name.startswith(prefixes):
            found.append(name)
    return found
