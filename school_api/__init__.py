from .models import init_school_schema

__all__ = ["init_school_schema"]
