"""
SFTP provider.

Uploads archives to a remote directory over SSH using paramiko.
"""

import posixpath
import socket
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

import paramiko
from paramiko import AutoAddPolicy, SFTPClient, SSHClient

from ..errors import NotConfigured, TransferError, TransportError
from ..types import RemoteObject
from .base import Provider, int_setting


class SFTPProvider(Provider):
    """
    SFTP adapter.

    Settings:
        host: SSH hostname or IP
        port: SSH port (default 22)
        username: SSH username
        password: SSH password (optional if using key)
        private_key: Path to private key file (optional)
        private_key_passphrase: Passphrase for the private key (optional)
        remote_path: Remote directory for archives
    """

    provider_id = 'sftp'
    label = 'SFTP'
    required_settings = ('host', 'username')

    def is_configured(self) -> bool:
        has_secret = bool(self.settings.get('password') or self.settings.get('private_key'))
        return super().is_configured() and has_secret

    @property
    def remote_dir(self) -> str:
        return (self.settings.get('remote_path') or '.').rstrip('/') or '/'

    def _connect_kwargs(self) -> dict:
        connect_kwargs = {
            'hostname': self.settings.get('host'),
            'port': int_setting(self.settings, 'port', 22),
            'username': self.settings.get('username'),
            'timeout': float(self.settings.get('timeout') or 30),
        }

        if self.settings.get('password'):
            connect_kwargs['password'] = self.settings['password']
        elif self.settings.get('private_key'):
            key_path = Path(self.settings['private_key']).expanduser()
            if not key_path.exists():
                raise NotConfigured(f"Private key not found: {self.settings['private_key']}")
            connect_kwargs['key_filename'] = str(key_path)
            if self.settings.get('private_key_passphrase'):
                connect_kwargs['passphrase'] = self.settings['private_key_passphrase']
        else:
            raise NotConfigured("Either password or private_key must be provided")

        return connect_kwargs

    @contextmanager
    def session(self) -> Iterator[SFTPClient]:
        """
        Open an SFTP session for the duration of the block.

        Raises:
            NotConfigured: If credentials are missing or rejected
            TransportError: If the connection fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(**self._connect_kwargs())
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise NotConfigured(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, socket.error) as e:
            ssh_client.close()
            raise TransportError(f"SSH connection to {self.settings.get('host')} failed: {e}")

        try:
            yield sftp_client
        except (paramiko.SSHException, socket.timeout) as e:
            raise TransportError(f"SFTP operation failed: {e}")
        except OSError as e:
            raise TransferError(0, f"SFTP operation failed: {e}")
        finally:
            sftp_client.close()
            ssh_client.close()

    def path_for(self, remote_name: str) -> str:
        return posixpath.join(self.remote_dir, remote_name)

    def upload_single(self, local_path: str, remote_name: str, size: int):
        with self.session() as sftp:
            sftp.put(local_path, self.path_for(remote_name))

    def list_objects(self) -> List[RemoteObject]:
        with self.session() as sftp:
            entries = sftp.listdir_attr(self.remote_dir)

        return [
            RemoteObject(
                name=entry.filename,
                size_bytes=int(entry.st_size or 0),
                modified_at=int(entry.st_mtime or 0),
                key=self.path_for(entry.filename),
            )
            for entry in entries
            if entry.st_mode is None or stat.S_ISREG(entry.st_mode)
        ]

    def locate(self, name: str):
        return RemoteObject(name=name, key=self.path_for(name))

    def delete_object(self, obj: RemoteObject):
        with self.session() as sftp:
            try:
                sftp.remove(obj.key or self.path_for(obj.name))
            except FileNotFoundError:
                # Already gone
                return

    def test_connection(self):
        with self.session() as sftp:
            sftp.stat(self.remote_dir)
