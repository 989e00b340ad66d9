import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ordersync.core.config import settings
from ordersync.core.context import AppContext
from ordersync.routes import kitchen as kitchen_routes
from ordersync.views.kitchen import KitchenBoard

# Log level from settings
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL, logging.INFO))
logger = logging.getLogger("ordersync.main")


def create_app(ctx: AppContext = None, run_board: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        context = ctx or AppContext()
        await context.init()
        app.state.ctx = context
        app.state.board = None
        if run_board:
            board = KitchenBoard(context)
            await board.start()
            app.state.board = board
        try:
            yield
        finally:
            if app.state.board is not None:
                await app.state.board.stop()
            await context.close()
            logger.info("Relay stopped")

    app = FastAPI(
        title="ordersync relay",
        version="1.0.0",
        description="Kitchen board relay over the order sync engine",
        redirect_slashes=False,
        lifespan=lifespan,
    )

    # Configure CORS for local frontend dev. Adjust in production.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:8080", "http://127.0.0.1:8080", "http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(kitchen_routes.router)

    @app.get("/")
    def root():
        return {"status": "ordersync relay running"}

    return app


app = create_app()


def run() -> None:
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
