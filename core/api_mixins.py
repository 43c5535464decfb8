"""
API Mixins shared by the clinic's ViewSets and APIViews
"""
from rest_framework.response import Response
import logging

from .permissions import has_capability

logger = logging.getLogger(__name__)


class DomainErrorMixin:
    """
    Turn domain exceptions into JSON error responses.

    Views declare ``error_status_map`` as ``(exception class, HTTP status)``
    pairs; the first matching entry wins. Exceptions must provide ``as_dict()``.
    """

    error_status_map = ()

    def handle_exception(self, exc):
        for exc_class, status_code in self.error_status_map:
            if isinstance(exc, exc_class):
                logger.info(f"{type(self).__name__}: {type(exc).__name__} -> HTTP {status_code}")
                return Response(exc.as_dict(), status=status_code)
        return super().handle_exception(exc)


class ParticipantScopedMixin:
    """
    Scope querysets to the authenticated participant.

    Participants holding ``scope_bypass_capability`` see every row; everyone
    else only rows where ``scope_field`` points at them.
    """

    scope_field = None
    scope_bypass_capability = None

    def get_queryset(self):
        queryset = super().get_queryset()
        user = self.request.user
        if self.scope_bypass_capability and has_capability(user, self.scope_bypass_capability):
            return queryset
        return queryset.filter(**{self.scope_field: user})
