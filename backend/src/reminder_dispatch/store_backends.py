from __future__ import annotations

import logging
from typing import Any

import firebase_admin
from firebase_admin import credentials, db
from firebase_admin.exceptions import FirebaseError

from .config import ConfigurationError, Settings
from .store import DataStore, DataStoreError, InMemoryDataStore, UpdateFn, join_path, split_path

logger = logging.getLogger(__name__)


class _UpdateDeclined(Exception):
    """Aborts a realtime database transaction without writing."""


def initialize_firebase_app(settings: Settings) -> firebase_admin.App:
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    if not settings.firebase_database_url.strip():
        raise ConfigurationError("FIREBASE_DATABASE_URL is required for DATA_STORE_BACKEND=firebase")
    service_account = settings.service_account_info()
    if service_account is not None:
        credential = credentials.Certificate(service_account)
    elif settings.google_application_credentials.strip():
        credential = credentials.ApplicationDefault()
    else:
        raise ConfigurationError(
            "FIREBASE_SERVICE_ACCOUNT or GOOGLE_APPLICATION_CREDENTIALS is required for DATA_STORE_BACKEND=firebase"
        )
    app = firebase_admin.initialize_app(credential, {"databaseURL": settings.firebase_database_url})
    logger.info("firebase app initialised for %s", settings.firebase_database_url)
    return app


class FirebaseDataStore:
    def __init__(self, app: firebase_admin.App) -> None:
        self._app = app

    def _ref(self, path: str) -> db.Reference:
        return db.reference("/" + join_path(*split_path(path)), app=self._app)

    def read_snapshot(self, path: str) -> Any:
        try:
            return self._ref(path).get()
        except FirebaseError as exc:
            raise DataStoreError(f"read failed for {path}: {exc}") from exc

    def atomic_update(self, path: str, fn: UpdateFn) -> bool:
        def _transaction_update(current: Any) -> Any:
            updated = fn(current)
            if updated is None:
                raise _UpdateDeclined()
            return updated

        try:
            self._ref(path).transaction(_transaction_update)
        except _UpdateDeclined:
            return False
        except FirebaseError as exc:
            raise DataStoreError(f"transaction failed for {path}: {exc}") from exc
        return True

    def write(self, path: str, value: Any) -> None:
        try:
            self._ref(path).set(value)
        except FirebaseError as exc:
            raise DataStoreError(f"write failed for {path}: {exc}") from exc

    def delete(self, path: str) -> None:
        try:
            self._ref(path).delete()
        except FirebaseError as exc:
            raise DataStoreError(f"delete failed for {path}: {exc}") from exc


def create_data_store(settings: Settings) -> DataStore:
    backend = settings.data_store_backend.strip().lower()
    if backend == "firebase":
        return FirebaseDataStore(initialize_firebase_app(settings))
    if backend == "inmemory":
        return InMemoryDataStore()
    raise ConfigurationError(f"unsupported DATA_STORE_BACKEND: {settings.data_store_backend}")
