from .user_service import ensure_default_users, authenticate_user

# Submodules are imported directly where needed (services.visit_service, ...)

__all__ = ["ensure_default_users", "authenticate_user"]
