from .users import UserDirectoryClient, UserDirectoryError, build_user_directory

__all__ = [
    "UserDirectoryClient",
    "UserDirectoryError",
    "build_user_directory",
]
