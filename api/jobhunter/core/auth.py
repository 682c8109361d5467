from dataclasses import dataclass


@dataclass(slots=True)
class Principal:
    subject: str
    email: str | None = None

    @property
    def owner_id(self) -> str:
        return self.subject
