"""Process supervision of the installed services.

Each long-running service gets a systemd unit rendered from
``templates/systemd.service.j2``. Activation only touches what changed:

- a unit file is written only when its content differs
- ``daemon-reload`` runs once, and only if some unit changed
- a changed unit that is already running is restarted
- a unit that is not enabled or not running is started with ``enable --now``
- an unchanged, enabled and running unit is left alone
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..host.files import write_text_file
from ..host.interfaces import ProcessSupervisor
from ..models import Configuration
from .utils import render_template

logger = logging.getLogger("gpuctl.installer.service")

UNIT_TEMPLATE = 'systemd.service.j2'
BASE_AFTER = ('network.target', 'docker.service')
MANAGER_UNIT = 'backendai-manager'
APPPROXY_COORDINATOR_UNIT = 'backendai-appproxy-coordinator'


@dataclass(frozen=True)
class ServiceUnit:
    """A supervised service and the Python module that runs it."""
    name: str
    description: str
    module: str
    after: Sequence[str] = ()

    @property
    def filename(self) -> str:
        return f"{self.name}.service"


def service_units(config: Configuration) -> List[ServiceUnit]:
    """Units this node supervises, in start order."""
    manager = f"{MANAGER_UNIT}.service"
    agent = ServiceUnit(
        'backendai-agent', "Backend.AI Agent", 'ai.backend.cli ag start-server',
        after=(manager,) if config.is_coordinator else (),
    )
    if not config.is_coordinator:
        return [agent]

    units = [
        ServiceUnit(MANAGER_UNIT, "Backend.AI Manager", 'ai.backend.cli mgr start-server'),
        ServiceUnit('backendai-storage-proxy', "Backend.AI Storage Proxy", 'ai.backend.storage.server'),
        ServiceUnit('backendai-webserver', "Backend.AI Web Server", 'ai.backend.web.server',
                    after=(manager,)),
        ServiceUnit(APPPROXY_COORDINATOR_UNIT, "Backend.AI App Proxy Coordinator",
                    'ai.backend.cli app-proxy-coordinator start-server'),
        ServiceUnit('backendai-appproxy-worker', "Backend.AI App Proxy Worker",
                    'ai.backend.cli app-proxy-worker start-server',
                    after=(f"{APPPROXY_COORDINATOR_UNIT}.service",)),
    ]
    if config.runs_local_agent:
        units.append(agent)
    return units


def render_unit(config: Configuration, unit: ServiceUnit) -> str:
    return render_template(
        UNIT_TEMPLATE,
        description=unit.description,
        after=[*BASE_AFTER, *unit.after],
        source_path=config.source_path,
        venv_path=config.venv_path,
        module=unit.module,
    )


class ServiceSupervisorRegistrar:
    """Writes unit files and brings the services up.

    Args:
        config: Provisioning configuration
        supervisor: Process supervisor driving the units
        unit_dir: Directory the unit files are written to
    """

    def __init__(self, config: Configuration, supervisor: ProcessSupervisor, unit_dir: Path):
        self.config = config
        self.supervisor = supervisor
        self.unit_dir = Path(unit_dir)

    def register(self, units: Optional[List[ServiceUnit]] = None) -> Dict[str, str]:
        """Write and activate every unit.

        Returns:
            dict: unit name to the action taken (``started``, ``restarted`` or ``unchanged``)
        """
        units = units if units is not None else service_units(self.config)
        changed = {}
        for unit in units:
            path = self.unit_dir / unit.filename
            changed[unit.name] = write_text_file(
                path, render_unit(self.config, unit), dry_run=self.config.dry_run
            )
            if changed[unit.name]:
                logger.info(f"📝 Wrote unit {path}")

        if any(changed.values()):
            self.supervisor.daemon_reload()

        actions = {}
        for unit in units:
            actions[unit.name] = self._activate(unit.name, changed[unit.name])
        return actions

    def _activate(self, name: str, changed: bool) -> str:
        enabled = self.supervisor.is_enabled(name)
        active = self.supervisor.is_active(name)

        if not enabled or not active:
            logger.info(f"🚀 Enabling and starting {name}")
            self.supervisor.enable(name, now=True)
            return 'started'
        if changed:
            logger.info(f"🔄 Restarting {name} to pick up the new unit")
            self.supervisor.restart(name)
            return 'restarted'
        logger.info(f"✅ {name} already running")
        return 'unchanged'
