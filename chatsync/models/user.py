from pydantic import BaseModel


class UserSummary(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or (self.email or self.id)
