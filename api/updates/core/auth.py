from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"
    ANONYMOUS = "anonymous"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    def has_scopes(self, required: set[str]) -> bool:
        return required <= self.scopes


ANONYMOUS_PRINCIPAL = Principal(
    principal_type=PrincipalType.ANONYMOUS,
    subject="anonymous",
    scopes={"updates:read"},
)
