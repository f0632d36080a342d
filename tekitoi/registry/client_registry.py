# tekitoi/registry/client_registry.py
import hmac
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..oauth.errors import (
    ClientNotFoundError,
    InvalidClientSecretError,
    ProviderNotFoundError,
    RedirectUriMismatchError,
)
from ..utils.security import hash_password
from .models import Application, Dataset, ProviderConfig, User

logger = logging.getLogger(__name__)


class ClientRegistry:
    """
    Read-only view over the applications, providers and users loaded from
    a dataset. Shared by every request without locking.
    """

    def __init__(self, applications: Optional[List[Application]] = None):
        self._applications_by_client_id: Dict[str, Application] = {}
        self._applications_by_id: Dict[str, Application] = {}
        self._users: Dict[Tuple[str, str], User] = {}
        for application in applications or []:
            self._register(application)
        logger.info(f"ClientRegistry initialized with {len(self._applications_by_id)} application(s).")

    @classmethod
    def from_dataset(cls, dataset: Union[Dataset, dict]) -> "ClientRegistry":
        if isinstance(dataset, dict):
            dataset = Dataset.model_validate(dataset)
        return cls(dataset.applications)

    @classmethod
    def from_dataset_file(cls, path: Union[str, Path]) -> "ClientRegistry":
        """
        Load a registry from a JSON dataset file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not valid JSON or does not match the dataset schema
        """
        dataset_path = Path(path)
        logger.info(f"Loading dataset from {dataset_path.resolve()}")
        try:
            raw = json.loads(dataset_path.read_text(encoding="utf-8"))
            dataset = Dataset.model_validate(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Dataset file {dataset_path} is not valid JSON: {e}") from e
        except ValidationError as e:
            raise ValueError(f"Dataset file {dataset_path} is invalid: {e}") from e
        return cls(dataset.applications)

    def _register(self, application: Application) -> None:
        if application.client_id in self._applications_by_client_id:
            raise ValueError(f"Duplicate client_id '{application.client_id}' in dataset.")
        if application.id in self._applications_by_id:
            raise ValueError(f"Duplicate application id '{application.id}' in dataset.")

        for provider in application.providers:
            if not provider.provider_kind.is_local:
                continue
            for entry in provider.users:
                if (application.id, entry.id) in self._users:
                    raise ValueError(f"Duplicate user id '{entry.id}' in application '{application.client_id}'.")
                password_hash = entry.password_hash
                if entry.password and not password_hash:
                    password_hash = hash_password(entry.password)
                self._users[(application.id, entry.id)] = User(
                    id=entry.id,
                    application_id=application.id,
                    provider_id=provider.id,
                    provider_kind=provider.provider_kind,
                    login=entry.login,
                    email=entry.email,
                    name=entry.name,
                    password_hash=password_hash,
                )
                # cleartext is only needed once, to derive the hash
                entry.password = None

        self._applications_by_client_id[application.client_id] = application
        self._applications_by_id[application.id] = application
        logger.debug(
            f"Registered application '{application.client_id}' with providers "
            f"{[provider.id for provider in application.providers]}"
        )

    @property
    def applications(self) -> List[Application]:
        return list(self._applications_by_id.values())

    def find_application(self, client_id: str) -> Application:
        application = self._applications_by_client_id.get(client_id)
        if application is None:
            logger.warning(f"Unknown client_id: {client_id}")
            raise ClientNotFoundError()
        return application

    def get_application(self, application_id: str) -> Optional[Application]:
        return self._applications_by_id.get(application_id)

    def find_provider(self, application_id: str, provider_ref: str) -> ProviderConfig:
        """
        Resolve a provider of an application by its id, falling back to its kind.

        Raises:
            ProviderNotFoundError: If the application does not offer such a provider
        """
        application = self._applications_by_id.get(application_id)
        if application is not None:
            for provider in application.providers:
                if provider.id == provider_ref:
                    return provider
            for provider in application.providers:
                if provider.kind == provider_ref:
                    return provider
        logger.warning(f"Provider '{provider_ref}' not found for application '{application_id}'.")
        raise ProviderNotFoundError()

    def list_providers(self, application_id: str) -> List[ProviderConfig]:
        application = self._applications_by_id.get(application_id)
        return list(application.providers) if application else []

    def validate_redirect_uri(self, application: Application, supplied_uri: Optional[str]) -> None:
        if supplied_uri is None or not application.is_redirect_uri_matching(supplied_uri):
            logger.warning(
                f"Redirect URI '{supplied_uri}' does not match the one registered for "
                f"client '{application.client_id}'."
            )
            raise RedirectUriMismatchError()

    def validate_client_secret(self, application: Application, supplied_secret: Optional[str]) -> None:
        """Applications without client_secrets are public clients and skip this check."""
        if not application.client_secrets:
            return
        if supplied_secret is None:
            logger.warning(f"Missing client_secret for confidential client '{application.client_id}'.")
            raise InvalidClientSecretError()
        supplied = supplied_secret.encode("utf-8")
        matches = [hmac.compare_digest(secret.encode("utf-8"), supplied) for secret in application.client_secrets]
        if not any(matches):
            logger.warning(f"Invalid client_secret for client '{application.client_id}'.")
            raise InvalidClientSecretError()

    def list_users(self, application_id: str, provider_id: str) -> List[User]:
        return [
            user for (app_id, _), user in self._users.items()
            if app_id == application_id and user.provider_id == provider_id
        ]

    def find_user(self, application_id: str, user_id: str) -> Optional[User]:
        return self._users.get((application_id, user_id))

    def find_user_by_email(self, application_id: str, provider_id: str, email: str) -> Optional[User]:
        for user in self.list_users(application_id, provider_id):
            if user.email is not None and user.email.lower() == email.lower():
                return user
        return None

