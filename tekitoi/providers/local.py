# tekitoi/providers/local.py
import logging
from typing import List

from ..oauth.errors import InvalidCredentialsError
from ..registry.client_registry import ClientRegistry
from ..registry.models import LocalProviderConfig, ProviderKind, User
from ..utils.security import DUMMY_PASSWORD_HASH, verify_password

logger = logging.getLogger(__name__)


class LocalProviderAdapter:
    """Identity source answered from the dataset, without any upstream hop."""

    def __init__(self, provider: LocalProviderConfig, registry: ClientRegistry, application_id: str):
        self.provider = provider
        self.registry = registry
        self.application_id = application_id

    @property
    def kind(self) -> ProviderKind:
        return self.provider.provider_kind

    def list_users(self) -> List[User]:
        return self.registry.list_users(self.application_id, self.provider.id)


class CredentialsProviderAdapter(LocalProviderAdapter):
    """Email and password login."""

    def verify_password(self, user: User, supplied_password: str) -> bool:
        if not user.password_hash:
            return False
        return verify_password(supplied_password, user.password_hash)

    def authenticate(self, email: str, password: str) -> User:
        """
        Resolve the user owning email and check the password.

        Raises:
            InvalidCredentialsError: For an unknown email and for a wrong password alike
        """
        user = self.registry.find_user_by_email(self.application_id, self.provider.id, email)
        if user is None:
            # same cost as a real check, so response time does not reveal known emails
            verify_password(password, DUMMY_PASSWORD_HASH)
            logger.warning(f"Credentials login failed for application '{self.application_id}': unknown user.")
            raise InvalidCredentialsError()
        if not self.verify_password(user, password):
            logger.warning(f"Credentials login failed for application '{self.application_id}': invalid password.")
            raise InvalidCredentialsError()
        return user


class SelectableUsersProviderAdapter(LocalProviderAdapter):
    """Profile list and user list: the user picks an identity from the page."""

    def select_user(self, user_id: str) -> User:
        """
        Raises:
            InvalidCredentialsError: If user_id is not one of this provider's users
        """
        user = self.registry.find_user(self.application_id, user_id)
        if user is None or user.provider_id != self.provider.id:
            logger.warning(
                f"User '{user_id}' is not offered by provider '{self.provider.id}' "
                f"of application '{self.application_id}'."
            )
            raise InvalidCredentialsError()
        return user
