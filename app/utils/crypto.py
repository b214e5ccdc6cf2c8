from cryptography.fernet import Fernet, InvalidToken

from app.exceptions import AuthorizationRevokedError
from settings import settings

cipher_suite = Fernet(settings.password_encryption_key.encode())


class CredentialCipher:
    """Encrypts stored IMAP passwords at rest."""

    @staticmethod
    def encrypt(secret: str) -> str:
        return cipher_suite.encrypt(secret.encode()).decode()

    @staticmethod
    def decrypt(secret: str) -> str:
        """Decrypt a stored secret. A secret that no longer decrypts cannot be used to log in."""
        try:
            return cipher_suite.decrypt(secret.encode()).decode()
        except InvalidToken as e:
            raise AuthorizationRevokedError("Stored credentials could not be decrypted") from e
