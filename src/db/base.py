"""Declarative base shared by all approval engine tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
