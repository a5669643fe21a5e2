from tubegate.models.api_key import ApiKey
from tubegate.models.api_usage import ApiUsage
from tubegate.models.base import Base

__all__ = ["ApiKey", "ApiUsage", "Base"]
