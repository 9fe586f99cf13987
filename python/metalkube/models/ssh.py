# models/ssh.py

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List


class SSHCredentials(BaseModel):
    """
    Authentication material for reaching one node over SSH.
    A private key is preferred; a password is the fallback. With neither set,
    the local SSH agent / default identities are used.
    If host_keys is empty => no known keys => trust-on-first-use.
    """

    model_config = ConfigDict(frozen=True)

    user: str = "root"
    port: int = Field(default=22, ge=1, le=65535)
    private_key: Optional[str] = Field(default=None, repr=False)
    password: Optional[str] = Field(default=None, repr=False)
    host_keys: Optional[List[str]] = None

    @field_validator("private_key", "password")
    @classmethod
    def validate_secret(cls, val: Optional[str]) -> Optional[str]:
        if val is not None and not val.strip():
            raise ValueError("SSH secrets must be non-empty when provided")
        return val
