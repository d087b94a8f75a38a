"""UFW firewall rules."""

import logging
from typing import List

from ..models import NetworkRule
from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.firewall")


def ufw_arguments(rule: NetworkRule) -> List[str]:
    """Translate a rule into ``ufw`` arguments.

    Example:
        ``NetworkRule('100.64.0.0/10', 8120, comment='etcd')`` becomes
        ``['allow', 'from', '100.64.0.0/10', 'to', 'any', 'port', '8120',
        'comment', 'etcd']``.
    """
    args = [rule.action.value, 'from', rule.source, 'to', 'any']
    if rule.port_spec is not None:
        args += ['port', rule.port_spec]
    if rule.proto:
        args += ['proto', rule.proto]
    if rule.comment:
        args += ['comment', rule.comment]
    return args


class UfwFirewall:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def is_available(self) -> bool:
        return self.runner.which('ufw') is not None

    def is_active(self) -> bool:
        return 'Status: active' in self.runner.output(['ufw', 'status'])

    def apply(self, rule: NetworkRule) -> None:
        # ufw skips rules that already exist, so reapplying is a no-op
        self.runner.run(['ufw', *ufw_arguments(rule)])

    def enable(self) -> None:
        if not self.is_active():
            self.runner.run(['ufw', '--force', 'enable'])
