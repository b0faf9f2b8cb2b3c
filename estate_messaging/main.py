from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from estate_messaging import config
from estate_messaging.database.connection import close_store_connection, connect_to_store
from estate_messaging.log_config import configure_logging
from estate_messaging.routers.conversations import router as conversations_router
from estate_messaging.services.session_registry import SessionRegistry
from estate_messaging.utils.blob_store import get_blob_store


def create_app(gateway=None, blob_store=None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):

        configure_logging()
        store = await connect_to_store(gateway)
        blobs = blob_store or get_blob_store()
        app.state.sessions = SessionRegistry(store, blobs)
        try:
            yield
        finally:
            await app.state.sessions.close()
            await blobs.close()
            await close_store_connection()

    app = FastAPI(title="Estate messaging", lifespan=lifespan)
    app.include_router(conversations_router)
    # attachments saved by LocalBlobStore
    app.mount("/uploads", StaticFiles(directory=config.UPLOADS_DIR, check_dir=False), name="uploads")

    @app.get("/")
    async def root():
        return {"message": "Messaging service is running"}

    return app


app = create_app()
