from fastapi import HTTPException


class LabkeeperError(ValueError):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(LabkeeperError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(LabkeeperError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(LabkeeperError):
    status_code = 409
    code = "CONFLICT"


class InsufficientStockError(LabkeeperError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, message: str, violations: list[dict] | None = None):
        super().__init__(message)
        self.violations = violations or []

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["violations"] = self.violations
        return detail


class InternalError(LabkeeperError):
    pass


def to_http_exception(exc: LabkeeperError) -> HTTPException:
    if isinstance(exc, InternalError):
        return HTTPException(
            status_code=exc.status_code,
            detail={"code": exc.code, "message": "Something went wrong. Please try again."},
        )
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
