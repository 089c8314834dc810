from dependency_injector import containers, providers

from reservations.application.cancel_reservation import CancelReservationUseCase
from reservations.application.create_reservation import CreateReservationUseCase
from reservations.application.expire_reservations import ExpireReservationsUseCase
from reservations.application.ledger import WebhookLedger
from reservations.application.paypal_checkout import (
    CapturePayPalOrderUseCase,
    CreatePayPalOrderUseCase,
)
from reservations.application.paypal_webhook import PayPalWebhookHandler
from reservations.application.process_outbox_events import ProcessOutboxEventsUseCase
from reservations.application.stripe_webhook import StripeWebhookHandler
from reservations.application.webhook_health import GetWebhookHealthUseCase
from reservations.infrastructure.container import InfrastructureContainer


class ApplicationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    infrastructure_container = providers.Container[InfrastructureContainer](
        InfrastructureContainer,
        config=config.infrastructure,
    )

    ledger = providers.Singleton[WebhookLedger](
        WebhookLedger,
        unit_of_work=infrastructure_container.unit_of_work,
        processing_lock_minutes=config.reservations.processing_lock_minutes.as_int(),
        retention_days=config.webhooks.retention_days.as_int(),
    )
    create_reservation_use_case = providers.Singleton[CreateReservationUseCase](
        CreateReservationUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        ledger=ledger,
        hold_hours=config.reservations.hold_hours.as_int(),
    )
    stripe_webhook_handler = providers.Singleton[StripeWebhookHandler](
        StripeWebhookHandler,
        unit_of_work=infrastructure_container.unit_of_work,
        ledger=ledger,
        create_reservation=create_reservation_use_case,
        relist_on_refund=config.reservations.relist_on_refund,
    )
    paypal_webhook_handler = providers.Singleton[PayPalWebhookHandler](
        PayPalWebhookHandler,
        unit_of_work=infrastructure_container.unit_of_work,
        ledger=ledger,
        create_reservation=create_reservation_use_case,
        paypal_client=infrastructure_container.paypal_client,
        relist_on_refund=config.reservations.relist_on_refund,
    )
    create_paypal_order_use_case = providers.Singleton[CreatePayPalOrderUseCase](
        CreatePayPalOrderUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        paypal_client=infrastructure_container.paypal_client,
        deposit_mode=config.deposit.mode,
        deposit_fixed_amount=config.deposit.fixed_amount,
        deposit_percent=config.deposit.percent,
        deposit_cap=config.deposit.cap,
        deposit_minimum=config.deposit.minimum,
    )
    capture_paypal_order_use_case = providers.Singleton[CapturePayPalOrderUseCase](
        CapturePayPalOrderUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        paypal_client=infrastructure_container.paypal_client,
        create_reservation=create_reservation_use_case,
    )
    expire_reservations_use_case = providers.Singleton[ExpireReservationsUseCase](
        ExpireReservationsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        batch_size=config.workers.sweeper_batch_size.as_int(),
    )
    cancel_reservation_use_case = providers.Singleton[CancelReservationUseCase](
        CancelReservationUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    webhook_health_use_case = providers.Singleton[GetWebhookHealthUseCase](
        GetWebhookHealthUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        ledger=ledger,
    )
    process_outbox_events_use_case = providers.Singleton[ProcessOutboxEventsUseCase](
        ProcessOutboxEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        kafka_producer=infrastructure_container.kafka_producer,
        batch_size=config.workers.outbox_batch_size.as_int(),
    )
