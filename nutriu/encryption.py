"""
This module manages the symmetric key used to encrypt the local session cache.

It uses the `cryptography` library (Fernet symmetric encryption) so that the
cached identity record kept on disk between runs is not stored in plain text.
The module is responsible for:
- Generating a secret key if one does not already exist.
- Storing and loading the key from a key file (`secret.key` by default).
- Building the `Fernet` instance used by `LocalCache`.

Security Note: The key file must be kept out of version control.
"""
# nutriu/encryption.py

import logging
import os

from cryptography.fernet import Fernet

logger = logging.getLogger("nutriu.encryption")


def write_key(path: str) -> bytes:
    """Generates a new Fernet key and saves it to `path`.

    Returns:
        bytes: The generated key.
    """
    key = Fernet.generate_key()
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    with open(path, "wb") as key_file:
        key_file.write(key)
    return key


def load_key(path: str) -> bytes:
    """Loads the Fernet key stored at `path`.

    Raises:
        FileNotFoundError: If the key file does not exist.
    """
    with open(path, "rb") as key_file:
        return key_file.read().strip()


def get_encryptor(path: str) -> Fernet:
    """Returns a Fernet instance for the key at `path`, creating the key on first use."""
    try:
        key = load_key(path)
    except FileNotFoundError:
        logger.info("Encryption key not found at %s, generating a new one", path)
        key = write_key(path)
    return Fernet(key)
