import os
from dataclasses import dataclass, field

PASSWORD_ENV = "SAHKOAPP_ELENIA_PASSWORD"


@dataclass(frozen=True)
class Credential:
    username: str
    secret: str = field(repr=False)


class StaticCredentialProvider:
    def __init__(self, credential=None):
        self.credential = credential

    def get_credential(self):
        return self.credential


class ConfigCredentialProvider:
    """Reads the Elenia login from the app config.

    The password may live in the environment instead of the options file.
    """

    def __init__(self, cfg, environ=None):
        self.cfg = cfg
        self.environ = os.environ if environ is None else environ

    def get_credential(self):
        elenia = self.cfg.elenia
        username = (elenia.username or "").strip()
        secret = self.environ.get(PASSWORD_ENV) or elenia.password or ""
        if not username or not secret:
            return None
        return Credential(username=username, secret=secret)
