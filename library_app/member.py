from __future__ import annotations


def format_member_code(number: int, prefix: str = "MBR", width: int = 3) -> str:
    """Render a member number as a zero-padded code, e.g. 7 -> 'MBR007'.

    Numbers wider than ``width`` are kept intact ('MBR1000').
    """
    if number < 1:
        raise ValueError("Member numbers start at 1.")
    return f"{prefix}{number:0{width}d}"


class Member:
    """A registered library member."""

    def __init__(self, name: str, email: str, member_code: str | None = None, id: int | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        # Assigned once by the library when the member is created
        self.member_code = member_code
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.member_code} {self.name} <{self.email}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "member_code": self.member_code,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        return Member(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            member_code=data.get("member_code"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
