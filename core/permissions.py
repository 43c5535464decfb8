from rest_framework.permissions import BasePermission

VALIDATE_FEE = "validate_fee"
VALIDATE_PROCEDURE = "validate_procedure"

# Capabilities granted by role alone; anything else needs an explicit Django permission
ROLE_CAPABILITIES = {
    "treasurer": {VALIDATE_FEE, VALIDATE_PROCEDURE},
    "manager": {VALIDATE_FEE, VALIDATE_PROCEDURE},
    "admin": {VALIDATE_FEE, VALIDATE_PROCEDURE},
}

CAPABILITY_PERMISSIONS = {
    VALIDATE_FEE: "jaspel.validate_fee",
    VALIDATE_PROCEDURE: "jaspel.validate_procedure",
}


def has_capability(actor, capability):  # Check whether an actor may perform a guarded operation
    if actor is None or not getattr(actor, "is_authenticated", False):
        return False
    if not actor.is_active:
        return False
    if actor.is_superuser:
        return True

    role = (getattr(actor, "role", "") or "").lower()
    if capability in ROLE_CAPABILITIES.get(role, set()):
        return True

    permission = CAPABILITY_PERMISSIONS.get(capability)
    return bool(permission and actor.has_perm(permission))


class HasCapability(BasePermission):  # DRF permission requiring ``required_capability`` on the view
    message = "Anda tidak memiliki izin untuk operasi ini."

    def has_permission(self, request, view):
        capability = getattr(view, "required_capability", None)
        if capability is None:
            return True
        return has_capability(request.user, capability)
