"""
Checkout Service — FastAPI entry point

Exposes checkout, cart validation, cart mutation and order queries.
Authentication happens upstream: the gateway resolves the caller and
passes the user id in the X-User-Id header.

  ┌──────────┐     ┌──────────┐     ┌──────────────────────────┐
  │ Frontend │────▶│ Gateway  │────▶│ Checkout Service         │
  │          │     │ (auth)   │     │  cart / checkout / order │
  └──────────┘     └──────────┘     └────────────┬─────────────┘
                                                 │ checkout_events
                                                 ▼ inventory_events
                                               Redis
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import cart, queries, validation
from .config import Settings, get_settings
from .db import create_engine, create_schema, create_session_factory
from .events import EventPublisher
from .orchestrator import CheckoutOrchestrator
from .schemas import AddToCartRequest, CheckoutConfirmation, CheckoutRequest, UpdateQuantityRequest

logger = logging.getLogger(__name__)

CART_ERROR_STATUS = {
    cart.BAD_REQUEST: 400,
    cart.FORBIDDEN: 403,
    cart.NOT_FOUND: 404,
    cart.STORE_ERROR: 503,
}


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    engine = create_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        if settings.create_schema:
            await create_schema(engine)
        app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        logger.info("Checkout service started (database=%s)", engine.url.render_as_string(hide_password=True))
        yield
        await app.state.redis.aclose()
        await engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = create_session_factory(engine)
    app.state.redis = None

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error_category": "validation",
                "message": "Request validation failed",
                "details": [
                    {"field": ".".join(str(p) for p in err["loc"][1:]), "error": err["msg"]}
                    for err in exc.errors()
                ],
            },
        )

    _register_routes(app)
    return app


# ── Dependencies ─────────────────────────────────


def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return x_user_id


async def get_session(request: Request):
    factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with factory() as session:
        yield session


def get_orchestrator(request: Request) -> CheckoutOrchestrator:
    state = request.app.state
    return CheckoutOrchestrator(
        state.session_factory,
        EventPublisher(state.redis),
        state.settings.checkout_policy(),
    )


def _cart_response(result: cart.CartResult) -> dict:
    if not result.success:
        raise HTTPException(
            status_code=CART_ERROR_STATUS.get(result.error, 400),
            detail={"error": result.reason, **result.details},
        )
    return {"success": True, "message": result.reason, **result.details}


# ── Routes ───────────────────────────────────────


def _register_routes(app: FastAPI) -> None:
    @app.post("/checkout", status_code=201, response_model=CheckoutConfirmation)
    async def checkout(
        req: CheckoutRequest,
        user_id: str = Depends(current_user_id),
        orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    ):
        """Run the checkout saga for the caller's cart."""
        outcome = await orchestrator.execute(user_id, req)
        if not outcome.success:
            return JSONResponse(
                status_code=outcome.error.status_code,
                content=outcome.error.to_dict(),
            )
        return outcome.confirmation

    @app.post("/cart/validate")
    async def validate_cart(
        request: Request,
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        """Advisory validation of the caller's cart against the live catalog."""
        threshold = request.app.state.settings.price_drift_threshold_percent
        result = await validation.validate_cart(session, user_id, threshold)
        return result.to_dict()

    @app.get("/cart")
    async def get_cart(
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        return await cart.get_cart(session, user_id)

    @app.post("/cart/items")
    async def add_to_cart(
        req: AddToCartRequest,
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        result = await cart.add_item(session, user_id, req.content_id, req.quantity)
        return _cart_response(result)

    @app.patch("/cart/items/{cart_item_id}")
    async def update_cart_item(
        cart_item_id: str,
        req: UpdateQuantityRequest,
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        """Change a line's quantity; zero or less removes it."""
        result = await cart.update_quantity(session, user_id, cart_item_id, req.quantity)
        return _cart_response(result)

    @app.delete("/cart/items/{cart_item_id}")
    async def remove_cart_item(
        cart_item_id: str,
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        result = await cart.remove_item(session, user_id, cart_item_id)
        return _cart_response(result)

    @app.delete("/cart")
    async def clear_cart(
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        cart_id = await queries.get_cart_id(session, user_id)
        if cart_id is None:
            return {"success": True, "message": "Cart is already empty"}
        result = await cart.clear_cart(session, cart_id)
        if not result.success:
            raise HTTPException(status_code=503, detail=result.reason)
        return {"success": True, "message": "Cart cleared"}

    # ── Order queries (read side) ────────────────

    @app.get("/queries/orders")
    async def query_list_orders(
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        return await queries.list_orders(session, user_id)

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(
        order_id: str,
        user_id: str = Depends(current_user_id),
        session: AsyncSession = Depends(get_session),
    ):
        order = await queries.get_order(session, user_id, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "checkout-service"}


app = create_app()
