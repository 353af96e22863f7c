"""Lifecycle management for the single VM backing the cluster."""

from __future__ import annotations

import sys
from typing import Dict, List, Optional

from minicluster import constants
from minicluster.constants import (
    DEFAULT_CERT_PATH,
    DOCKER_DAEMON_PORT,
    DOES_NOT_EXIST,
    LOCALKUBE_DATA_DIR,
    MACHINE_NAME,
)
from minicluster.drivers import create_driver
from minicluster.exceptions import ManagerError, MultiError, RetriableError
from minicluster.images import cache_iso, iso_file_uri
from minicluster.models import EngineOptions, HostRecord, MachineConfig, PowerState
from minicluster.provision import configure_docker
from minicluster.store import HostStore
from minicluster.utils import log

LOCALKUBE_STATUS_COMMAND = (
    "if pgrep localkube > /dev/null; then echo Running; else echo Stopped; fi"
)
LOGS_COMMAND = f"sudo cat {LOCALKUBE_DATA_DIR}/localkube.err {LOCALKUBE_DATA_DIR}/localkube.out 2>/dev/null"


class HostManager:
    """Owns create/load/start/stop/delete for the one named machine.

    State is always re-read from ``store``; nothing about the host is cached
    between calls.
    """

    def __init__(self, store: HostStore, machine_name: str = MACHINE_NAME) -> None:
        self.store = store
        self.machine_name = machine_name

    def ensure_started(self, config: MachineConfig) -> HostRecord:
        """Create the VM if needed, start it if stopped, then configure access to it."""
        try:
            exists = self.store.exists(self.machine_name)
        except OSError as exc:
            raise ManagerError(f"Error checking if host exists: {self.machine_name}") from exc

        if not exists:
            host = self._create_host(config)
        else:
            log("INFO", "Machine exists, loading it")
            try:
                host = self.store.load(self.machine_name)
            except ManagerError as exc:
                raise ManagerError(
                    f"Error loading existing host: {exc}. Try deleting the machine, then start it again."
                ) from exc
            try:
                state = host.driver.get_state()
            except ManagerError as exc:
                raise ManagerError(f"Error getting state for host: {exc}") from exc
            log("INFO", f"Machine state: {state.value or 'unknown'}")
            if state != PowerState.RUNNING:
                try:
                    host.driver.start()
                except ManagerError as exc:
                    raise ManagerError(f"Error starting stopped host: {exc}") from exc
                try:
                    self.store.save(host)
                except ManagerError as exc:
                    raise ManagerError(f"Error saving started host: {exc}") from exc

        try:
            self.configure_auth(host)
        except (ManagerError, OSError) as exc:
            raise RetriableError(ManagerError(f"Error configuring auth on host: {exc}")) from exc
        return host

    def _create_host(self, config: MachineConfig) -> HostRecord:
        driver = create_driver(self.machine_name, config, iso_file_uri(config.iso_url))
        try:
            cache_iso(config.iso_url)
        except ManagerError as exc:
            raise ManagerError(f"Error attempting to cache boot image from URL: {exc}") from exc

        host = HostRecord(
            name=self.machine_name,
            driver_name=config.vm_driver,
            driver=driver,
            engine_options=EngineOptions.from_machine_config(config),
        )
        try:
            driver.create()
        except (ManagerError, OSError) as exc:
            raise ManagerError(f"Error creating host: {exc}") from exc
        try:
            self.store.save(host)
        except ManagerError as exc:
            raise ManagerError(f"Error attempting to save host: {exc}") from exc
        return host

    def configure_auth(self, host: HostRecord) -> None:
        """Check the VM answers over SSH, prepare the bootstrap directories and set up docker TLS."""
        client = host.driver.ssh_client()
        client.run("exit 0")
        client.run(f"sudo mkdir -p {DEFAULT_CERT_PATH} {LOCALKUBE_DATA_DIR}")
        configure_docker(host.driver, client, host.engine_options)

    def load(self) -> HostRecord:
        """Load the record, failing if the machine has never been created."""
        try:
            exists = self.store.exists(self.machine_name)
        except OSError as exc:
            raise ManagerError(f"Error checking that host exists: {self.machine_name}") from exc
        if not exists:
            raise ManagerError(f"Machine does not exist: {self.machine_name}")
        try:
            return self.store.load(self.machine_name)
        except ManagerError as exc:
            raise ManagerError(f"Error loading host {self.machine_name}: {exc}") from exc

    def stop(self) -> None:
        try:
            host = self.store.load(self.machine_name)
        except ManagerError as exc:
            raise ManagerError(f"Error loading host {self.machine_name}: {exc}") from exc
        try:
            host.driver.stop()
        except ManagerError as exc:
            raise ManagerError(f"Error stopping host {self.machine_name}: {exc}") from exc
        self.store.save(host)

    def delete(self) -> None:
        """Remove the VM and its record; both are attempted and failures are reported together."""
        try:
            host = self.store.load(self.machine_name)
        except ManagerError as exc:
            raise ManagerError(f"Error deleting host {self.machine_name}: {exc}") from exc
        errors = MultiError()
        try:
            host.driver.remove()
        except (ManagerError, OSError) as exc:
            errors.collect(ManagerError(f"Error removing VM: {exc}"))
        try:
            self.store.remove(self.machine_name)
        except (ManagerError, OSError) as exc:
            errors.collect(ManagerError(f"Error removing host record: {exc}"))
        errors.raise_if_errors()

    def status(self) -> str:
        try:
            exists = self.store.exists(self.machine_name)
        except OSError as exc:
            raise ManagerError(f"Error checking that host exists: {self.machine_name}") from exc
        if not exists:
            return DOES_NOT_EXIST
        host = self.load()
        try:
            state = host.driver.get_state()
        except ManagerError as exc:
            raise ManagerError(f"Error getting host state: {exc}") from exc
        if state == PowerState.NONE:
            return DOES_NOT_EXIST
        return state.value

    def localkube_status(self) -> str:
        host = self.load()
        output = host.driver.run_command(LOCALKUBE_STATUS_COMMAND).strip()
        if output in (PowerState.RUNNING.value, PowerState.STOPPED.value):
            return output
        raise ManagerError(f"Unrecognized output from localkube status: {output}")

    def logs(self) -> str:
        host = self.load()
        return host.driver.run_command(LOGS_COMMAND)

    def docker_env(self) -> Dict[str, str]:
        """Environment variables pointing a docker client at the daemon inside the VM."""
        host = self.load()
        try:
            ip = host.driver.get_ip()
        except ManagerError as exc:
            raise ManagerError(f"Error getting ip from host: {exc}") from exc
        return {
            "DOCKER_TLS_VERIFY": "1",
            "DOCKER_HOST": f"tcp://{ip}:{DOCKER_DAEMON_PORT}",
            "DOCKER_CERT_PATH": str(constants.DOCKER_CERTS_DIR),
        }

    def ssh_shell(self, args: Optional[List[str]] = None) -> int:
        host = self.load()
        state = host.driver.get_state()
        if state != PowerState.RUNNING:
            raise ManagerError(f"Cannot run ssh command: Host {self.machine_name!r} is not running")
        return host.driver.ssh_client().shell(args)

    def ensure_running_or_exit(self, exit_status: int) -> None:
        """Exit the process unless the host reports Running."""
        try:
            state = self.status()
        except ManagerError as exc:
            log("ERROR", f"Error getting machine status: {exc}")
            sys.exit(1)
        if state != PowerState.RUNNING.value:
            print(f"{self.machine_name} is not currently running so the service cannot be accessed", flush=True)
            sys.exit(exit_status)
