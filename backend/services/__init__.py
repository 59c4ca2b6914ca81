from .errors import (
    CoreError, ValidationError, ForbiddenError, NotFoundError, ConflictError, TransientStoreError
)
from .auth import get_current_user, require_role, require_donor, require_hospital
