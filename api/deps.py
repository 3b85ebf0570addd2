"""
Request dependencies. The service handles are built once in main.create_app
and stored on app.state; routes reach them through these functions.
"""

from fastapi import Request

from config import Settings
from notifications.dispatcher import NotificationDispatcher
from payments.checkout import CheckoutService
from payments.reconciler import PaymentReconciler
from persistence.db import Database
from txn_manager import TransactionManager


class Services:
    def __init__(self, settings: Settings, db: Database, dispatcher: NotificationDispatcher,
                 transitions: TransactionManager, checkout: CheckoutService, reconciler: PaymentReconciler):
        self.settings = settings
        self.db = db
        self.dispatcher = dispatcher
        self.transitions = transitions
        self.checkout = checkout
        self.reconciler = reconciler


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings(request: Request) -> Settings:
    return request.app.state.services.settings
