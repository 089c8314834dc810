from dependency_injector import containers, providers

from reservations.application.container import ApplicationContainer
from reservations.presentation.outbox_worker import OutboxWorker
from reservations.presentation.sweeper_worker import SweeperWorker


class PresentationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    application = providers.Container[ApplicationContainer](
        ApplicationContainer, config=config
    )

    outbox_worker = providers.Singleton[OutboxWorker](
        OutboxWorker,
        use_case=application.process_outbox_events_use_case,
        interval_seconds=config.workers.outbox_interval_seconds.as_float(),
    )
    sweeper_worker = providers.Singleton[SweeperWorker](
        SweeperWorker,
        use_case=application.expire_reservations_use_case,
        interval_seconds=config.workers.sweeper_interval_seconds.as_float(),
    )
