"""SSH tunnel provisioning for couchbackup."""

import select
import socket
import socketserver
import threading
from pathlib import Path
from typing import Optional, Tuple

import paramiko

from couchbackup.errors import ConfigurationError, TransportError, TransportTimeoutError
from couchbackup.errors_catalog import actionable_error

FORWARD_BUFFER_SIZE = 32 * 1024


def resolve_private_key(tunnel) -> Path:
    key_path = Path(tunnel.private_key_path).expanduser()
    if not key_path.is_file():
        raise ConfigurationError(
            actionable_error("ssh_key_not_found", path=tunnel.private_key_path)
        )
    return key_path


class ForwardServer(socketserver.ThreadingTCPServer):
    """Local listener whose connections are relayed through an SSH transport."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, ssh_transport, remote_address: str, remote_port: int, logger):
        self.ssh_transport = ssh_transport
        self.remote_address = remote_address
        self.remote_port = remote_port
        self.logger = logger
        super().__init__(server_address, ForwardHandler)


class ForwardHandler(socketserver.BaseRequestHandler):
    def handle(self):
        server = self.server
        destination = (server.remote_address, server.remote_port)

        try:
            channel = server.ssh_transport.open_channel(
                "direct-tcpip",
                destination,
                self.request.getpeername(),
            )
        except (paramiko.SSHException, OSError) as exc:
            server.logger.warning(
                "Could not open forwarded channel to %s:%s: %s",
                server.remote_address,
                server.remote_port,
                exc,
            )
            return

        if channel is None:
            server.logger.warning(
                "SSH server rejected forwarding to %s:%s",
                server.remote_address,
                server.remote_port,
            )
            return

        try:
            while True:
                readable, _, _ = select.select([self.request, channel], [], [])
                if self.request in readable:
                    data = self.request.recv(FORWARD_BUFFER_SIZE)
                    if not data:
                        break
                    channel.sendall(data)
                if channel in readable:
                    data = channel.recv(FORWARD_BUFFER_SIZE)
                    if not data:
                        break
                    self.request.sendall(data)
        except (paramiko.SSHException, OSError) as exc:
            server.logger.debug("Forwarded connection closed: %s", exc)
        finally:
            channel.close()


class TunnelHandle:
    """Live SSH forward. ``close()`` releases it at most once."""

    def __init__(self, client, server: ForwardServer, thread: threading.Thread, logger):
        self.client = client
        self.server = server
        self.thread = thread
        self.logger = logger
        self._lock = threading.Lock()
        self._closed = False

    @property
    def local_port(self) -> int:
        return self.server.server_address[1]

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self.server.shutdown()
            self.server.server_close()
        finally:
            self.client.close()
        self.thread.join(timeout=5)
        self.logger.info("SSH tunnel closed.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class TransportService:
    """Opens the SSH local forward, or hands back the direct database address."""

    def __init__(
        self,
        logger,
        console,
        ssh_client_factory=paramiko.SSHClient,
        server_factory=ForwardServer,
    ):
        self.logger = logger
        self.console = console
        self.ssh_client_factory = ssh_client_factory
        self.server_factory = server_factory

    def acquire(self, config, deadline=None) -> Tuple[str, Optional[TunnelHandle]]:
        tunnel = config.tunnel
        endpoint = config.endpoint

        if not tunnel.enabled:
            self.logger.info(
                "Skipping SSH tunnel creation because SSH is disabled in the configuration."
            )
            base_url = endpoint.base_url
            self.logger.info("Base URL: %s", base_url)
            return base_url, None

        if not tunnel.host:
            raise ConfigurationError(actionable_error("missing_ssh_host"))

        variant = tunnel.credential_variant()
        timeout = config.connect_timeout
        if deadline is not None:
            deadline.check("opening the SSH tunnel")
            timeout = deadline.clamp(timeout)

        connect_kwargs = {
            "hostname": tunnel.host,
            "port": tunnel.port,
            "username": tunnel.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }

        if variant == "key":
            connect_kwargs["key_filename"] = str(resolve_private_key(tunnel))
            self.logger.info("Using SSH private key for authentication.")
        else:
            connect_kwargs["password"] = tunnel.password
            self.logger.info("Using SSH username/password for authentication.")

        self.console.print(f"[blue]Opening SSH tunnel via {tunnel.host}:{tunnel.port}...[/blue]")
        client = self.ssh_client_factory()
        try:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as exc:
            client.close()
            raise TransportError(actionable_error("ssh_auth_failed", host=tunnel.host)) from exc
        except socket.timeout as exc:
            client.close()
            raise TransportTimeoutError(
                f"SSH connection to {tunnel.host}:{tunnel.port} timed out after {timeout:.1f}s."
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise TransportError(
                f"Failed to establish SSH tunnel via {tunnel.host}:{tunnel.port}: {exc}"
            ) from exc

        remote_port = tunnel.remote_port or endpoint.port
        try:
            server = self.server_factory(
                (tunnel.local_address, tunnel.local_port),
                client.get_transport(),
                tunnel.remote_address,
                remote_port,
                self.logger,
            )
        except OSError as exc:
            client.close()
            raise TransportError(
                f"Could not listen on {tunnel.local_address}:{tunnel.local_port} "
                f"for the SSH forward: {exc}"
            ) from exc

        thread = threading.Thread(
            target=server.serve_forever,
            name="couchbackup-ssh-forward",
            daemon=True,
        )
        thread.start()
        handle = TunnelHandle(client=client, server=server, thread=thread, logger=self.logger)

        base_url = f"{endpoint.protocol}://{tunnel.local_address}:{handle.local_port}"
        self.logger.info(
            "SSH tunnel successfully established (%s:%s -> %s:%s).",
            tunnel.local_address,
            handle.local_port,
            tunnel.remote_address,
            remote_port,
        )
        self.logger.info("Base URL (via SSH): %s", base_url)
        return base_url, handle
