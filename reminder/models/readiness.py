from enum import Enum

from pydantic import BaseModel


class ReadinessEnum(str, Enum):
    FAIL = "fail"
    """The service is not ready."""
    OK = "ok"
    """The service is ready."""


class ReadinessCheckModel(BaseModel):
    id: str
    status: ReadinessEnum


class ReadinessModel(BaseModel):
    checks: list[ReadinessCheckModel]
    status: ReadinessEnum

    @classmethod
    def from_checks(cls, checks: dict[str, ReadinessEnum]) -> "ReadinessModel":
        """
        Aggregate component checks, if one of them fails, the whole readiness fails.
        """
        return cls(
            checks=[
                ReadinessCheckModel(id=check_id, status=status)
                for check_id, status in checks.items()
            ],
            status=(
                ReadinessEnum.OK
                if all(status == ReadinessEnum.OK for status in checks.values())
                else ReadinessEnum.FAIL
            ),
        )
