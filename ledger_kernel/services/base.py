"""
BaseService -- abstract base for write services.

Services receive a SQLAlchemy ``Session`` from the caller and persist with
``session.flush()`` -- never ``session.commit()``.  The caller owns the
transaction boundary.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from ledger_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for write services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.
    """

    def __init__(self, session: Session):
        self.session = session
