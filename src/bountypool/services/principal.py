"""The identity a request acts as."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Principal:
    """Platform user plus their GitHub identity; all None when anonymous."""

    user_id: int | None = None
    github_login: str | None = None
    github_token: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and bool(self.github_login)


ANONYMOUS = Principal()
