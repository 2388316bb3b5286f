"""
Symmetric encryption of backup files with gpg.

Files are encrypted with ``gpg --symmetric`` so they can also be decrypted
by hand with a stock gpg install and the passphrase.
"""

import os
import subprocess
from typing import Optional


class EncryptionError(Exception):
    """Raised when gpg fails to encrypt or decrypt a file."""
    pass


class GpgCipher:
    """Encrypts and decrypts files with a passphrase."""

    def __init__(self, passphrase: str, gpg_binary: str = 'gpg'):
        if not passphrase:
            raise ValueError("passphrase must not be empty")
        self._passphrase = passphrase
        self.gpg_binary = gpg_binary

    def _run(self, args, action: str):
        # Passphrase goes through stdin so it never shows up in the process list
        cmd = [
            self.gpg_binary, '--batch', '--yes', '--quiet',
            '--pinentry-mode', 'loopback', '--passphrase-fd', '0'
        ] + args
        try:
            result = subprocess.run(
                cmd,
                input=self._passphrase.encode(),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE
            )
        except FileNotFoundError:
            raise EncryptionError(f"{self.gpg_binary} not found - install gnupg")

        if result.returncode != 0:
            stderr = (result.stderr or b'').decode(errors='replace').strip()
            raise EncryptionError(f"gpg {action} failed (exit {result.returncode}): {stderr[:500]}")

    def encrypt(self, source_path: str) -> str:
        """
        Encrypt a file, then remove the plaintext.

        Args:
            source_path: Plaintext file

        Returns:
            Path of the encrypted file (source_path + '.gpg')

        Raises:
            EncryptionError: If gpg fails
        """
        dest_path = source_path + '.gpg'
        self._run(['--symmetric', '--output', dest_path, source_path], 'encrypt')
        os.remove(source_path)
        return dest_path

    def decrypt(self, source_path: str, dest_path: str) -> str:
        """
        Decrypt a file, then remove the ciphertext.

        A wrong passphrase is reported as EncryptionError.

        Raises:
            EncryptionError: If gpg fails
        """
        self._run(['--decrypt', '--output', dest_path, source_path], 'decrypt')
        os.remove(source_path)
        return dest_path


def build_cipher(config) -> Optional[GpgCipher]:
    """GpgCipher for the configured passphrase, or None when encryption is off."""
    if config.encrypted:
        return GpgCipher(config.passphrase)
    return None
