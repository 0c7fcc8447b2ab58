from pydantic import BaseModel


class ErrorInnerModel(BaseModel):
    message: str
    details: list[str]


class ErrorModel(BaseModel):
    error: ErrorInnerModel

    @classmethod
    def from_message(cls, message: str, *details: str) -> "ErrorModel":
        return cls(
            error=ErrorInnerModel(
                details=list(details),
                message=message,
            )
        )
