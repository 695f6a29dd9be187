from sqlalchemy.exc import SQLAlchemyError

# Row store failures surface as SQLAlchemy's own exceptions, unwrapped.
StoreError = SQLAlchemyError


class ValidationError(ValueError):
    pass


class NotFoundError(ValueError):
    pass


__all__ = ["NotFoundError", "StoreError", "ValidationError"]
