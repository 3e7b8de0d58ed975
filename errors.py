from fastapi import HTTPException


class ValidationError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class AuthenticationError(HTTPException):
    # One message for every credential failure so callers can't tell which check failed.
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


class AuthorizationError(HTTPException):
    def __init__(self, detail: str = "Not authorized"):
        super().__init__(status_code=403, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)


class UploadFailed(HTTPException):
    def __init__(self, detail: str = "Error uploading file", status_code: int = 500):
        super().__init__(status_code=status_code, detail=detail)
