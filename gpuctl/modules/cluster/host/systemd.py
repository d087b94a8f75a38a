"""systemd unit lifecycle."""

import logging

from .shell import CommandRunner

logger = logging.getLogger("gpuctl.host.systemd")


class SystemdSupervisor:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def daemon_reload(self) -> None:
        self.runner.run(['systemctl', 'daemon-reload'])

    def enable(self, unit: str, now: bool = True) -> None:
        args = ['systemctl', 'enable']
        if now:
            args.append('--now')
        self.runner.run([*args, unit])

    def restart(self, unit: str) -> None:
        self.runner.run(['systemctl', 'restart', unit])

    def is_enabled(self, unit: str) -> bool:
        return self.runner.output(['systemctl', 'is-enabled', unit]) == 'enabled'

    def is_active(self, unit: str) -> bool:
        return self.runner.output(['systemctl', 'is-active', unit]) == 'active'
