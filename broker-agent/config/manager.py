#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration management module for the VM broker.
This module handles broker configuration loading: built-in defaults, the JSON
file named by VM_BROKER_CONFIG, and environment overrides for connectivity.
"""
import copy
import json
import logging
import os
import ssl
from pathlib import Path
from typing import Any, Dict

from utils.validation import deep_update, is_truthy

logger = logging.getLogger("vm-broker")

DEFAULT_CONFIG_PATH = "/etc/vm-broker/broker.json"

DEFAULTS: Dict[str, Any] = {
    "bind_host": "0.0.0.0",
    "bind_port": 8080,
    "hypervisor": {
        "url": "",
        "username": "",
        "password": "",
        "node": "pve",
        "verify_ssl": True,
        "timeout": 30,
        "vmid_range": [3001, 3999],
        "template_vmid": 3000,
        "task_timeout": 300,
        "task_poll_interval": 2,
        "task_backoff": 1.0,
        "max_poll_interval": None,
    },
    "reconciliation": {
        "enabled": True,
        "interval_seconds": 3600,
        "initial_delay_seconds": 5,
        "destroy_after_hours": 24,
        "stop_grace_seconds": 5,
    },
    "provisioning": {
        "state_ttl_hours": 24,
        "sweep_interval_seconds": 3600,
        "max_vms": 10,
        "setup_file_remote_path": "C:\\hwho\\hwho.dat",
        "automation_command": [
            "powershell.exe",
            "-ExecutionPolicy",
            "Bypass",
            "-File",
            "C:\\automation\\start_{plan_type}.ps1",
        ],
        "journal_dir": None,
    },
    "plans": {
        "hour_booster": {"cores": 2, "memory": 4096, "description": "Hour Booster Plan - 2 vCPUs, 4GB RAM"},
        "dual_mode": {"cores": 2, "memory": 4096, "description": "Dual Mode Plan - 2 vCPUs, 4GB RAM"},
        "kd_drop": {"cores": 4, "memory": 8192, "description": "KD Drop Plan - 4 vCPUs, 8GB RAM"},
    },
    "store": {"path": None},
    "logging": {"level": "INFO", "file": None},
}

# env var -> (section, key); section None means top level
ENV_OVERRIDES = {
    "PROXMOX_HOST": ("hypervisor", "url"),
    "PROXMOX_USERNAME": ("hypervisor", "username"),
    "PROXMOX_PASSWORD": ("hypervisor", "password"),
    "PROXMOX_NODE": ("hypervisor", "node"),
    "PROXMOX_VERIFY_SSL": ("hypervisor", "verify_ssl"),
    "VM_BROKER_BIND_HOST": (None, "bind_host"),
    "VM_BROKER_BIND_PORT": (None, "bind_port"),
}


class ConfigManager:
    """Manager for configuration operations."""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or os.environ.get("VM_BROKER_CONFIG", DEFAULT_CONFIG_PATH)

    def _read_file(self) -> Dict[str, Any]:
        p = Path(self.config_path)
        if not p.exists():
            logger.info("Config file %s not found, using defaults", self.config_path)
            return {}
        with p.open("r", encoding="utf-8") as f:
            try:
                file_cfg = json.load(f)
            except Exception as e:
                # Fail fast: do not start the broker with an invalid config
                raise RuntimeError(f"Invalid JSON in VM_BROKER_CONFIG='{self.config_path}': {e}") from e
        if not isinstance(file_cfg, dict):
            raise RuntimeError(f"VM_BROKER_CONFIG='{self.config_path}' must contain a JSON object")
        return file_cfg

    def load_config(self, require_hypervisor: bool = False) -> Dict[str, Any]:
        """Load broker config.
        Precedence: env > JSON file (VM_BROKER_CONFIG) > built-in defaults.
        The `plans` section replaces the default catalog wholesale when present.
        With require_hypervisor=True, missing url/credentials are fatal.
        """
        cfg = copy.deepcopy(DEFAULTS)
        file_cfg = self._read_file()
        plans = file_cfg.pop("plans", None)
        deep_update(cfg, file_cfg)
        if isinstance(plans, dict) and plans:
            cfg["plans"] = plans

        for env_name, (section, key) in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None or value == "":
                continue
            target = cfg if section is None else cfg.setdefault(section, {})
            target[key] = value

        hv = cfg["hypervisor"]
        hv["verify_ssl"] = is_truthy(hv.get("verify_ssl"))
        try:
            cfg["bind_port"] = int(cfg["bind_port"])
        except (TypeError, ValueError) as e:
            raise RuntimeError(f"Invalid bind_port: {cfg['bind_port']!r}") from e

        if require_hypervisor:
            missing = [k for k in ("url", "username", "password", "node") if not hv.get(k)]
            if missing:
                raise RuntimeError(f"Missing hypervisor configuration: {', '.join(missing)}")
        return cfg


CLIENT_AUTH_MODES = {
    "none": ssl.CERT_NONE,
    "optional": ssl.CERT_OPTIONAL,
    "required": ssl.CERT_REQUIRED,
}


def tls_options(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Build uvicorn ssl_* keyword arguments from the `security.tls` section.

    Returns an empty dict when TLS is not configured or explicitly disabled.
    Raises RuntimeError for incomplete settings or missing files.
    """
    tls = (cfg.get("security") or {}).get("tls") or {}
    if not tls or not is_truthy(tls.get("enabled", True)):
        return {}

    files = {"ssl_certfile": tls.get("cert_file"), "ssl_keyfile": tls.get("key_file")}
    if not all(files.values()):
        raise RuntimeError("security.tls requires both cert_file and key_file")
    if tls.get("ca_file"):
        files["ssl_ca_certs"] = tls["ca_file"]
    for option, path in files.items():
        if not Path(path).is_file():
            raise RuntimeError(f"{option}: no such file {path}")

    mode = str(tls.get("client_auth") or "none").lower()
    if mode not in CLIENT_AUTH_MODES:
        raise RuntimeError(f"security.tls.client_auth must be one of {sorted(CLIENT_AUTH_MODES)}, got {mode!r}")
    if mode != "none" and "ssl_ca_certs" not in files:
        raise RuntimeError("security.tls.ca_file is required to verify client certificates")
    return dict(files, ssl_cert_reqs=CLIENT_AUTH_MODES[mode])
