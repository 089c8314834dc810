import asyncio
import logging

import uvicorn
from fastapi import FastAPI

from reservations.application.container import ApplicationContainer
from reservations.presentation import api
from reservations.presentation.api import router
from reservations.presentation.container import PresentationContainer
from reservations.presentation.outbox_worker import OutboxWorker
from reservations.presentation.sweeper_worker import SweeperWorker


def build_api(container: ApplicationContainer):
    app = FastAPI(title="Puppy reservations")
    app.include_router(router)
    container.wire(modules=[api])
    return app


async def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    presentation_container = PresentationContainer()
    presentation_container.config.from_yaml("reservations/config.yaml", required=True)

    app = build_api(presentation_container.application)
    server = presentation_container.config.server()

    outbox_worker: OutboxWorker = presentation_container.outbox_worker()
    sweeper_worker: SweeperWorker = presentation_container.sweeper_worker()

    api_task = asyncio.create_task(
        uvicorn.Server(
            uvicorn.Config(
                app,
                host=server["host"],
                port=int(server["port"]),
                log_level="info",
            )
        ).serve()
    )
    outbox_task = asyncio.create_task(outbox_worker.run())
    sweeper_task = asyncio.create_task(sweeper_worker.run())

    await asyncio.gather(api_task, outbox_task, sweeper_task)


if __name__ == "__main__":
    asyncio.run(main())
