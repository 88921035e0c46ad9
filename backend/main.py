from fastapi import FastAPI, Depends, HTTPException, status, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import List, Optional
import models
import auth
import order_service
import routing
from database import SessionLocal, get_db, init_db, init_sample_menu, wait_for_db
from order_lifecycle import OrderError, next_statuses, remaining_minutes
from schemas import (
    UserCreate,
    UserLogin,
    ProfileResponse,
    LocationUpdate,
    OnlineUpdate,
    RoleUpdate,
    MenuItemCreate,
    MenuItemResponse,
    AvailabilityUpdate,
    MenuItemDeleteResponse,
    OrderCreate,
    OrderItemResponse,
    OrderResponse,
    StatusUpdate,
    RatingCreate,
    RatingResponse,
    RatingStats,
    SuggestionCreate,
    SuggestionResponse,
)
import asyncio
import logging
import os
import redis
import redis.asyncio as aioredis
import uvicorn
from redis_client import rate_limit, redis_client, subscription_channels

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "10"))

app = FastAPI(title="Food Ordering API")


origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()] or [
    "http://localhost",
    "http://127.0.0.1:5173",
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8080",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    if wait_for_db():
        try:
            logger.info("Creating database tables...")
            init_db()
            if os.getenv("SEED_SAMPLE_MENU", "true").lower() == "true":
                init_sample_menu()
            logger.info("Database initialized")
        except Exception as e:
            logger.error(f"Error while initializing the database: {e}")
    else:
        logger.error("Database did not become available during startup")

    if redis_client.is_available():
        logger.info("Redis is available")
    else:
        logger.warning("Redis is unavailable, caching, rate limiting and push events are disabled")


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.kind})


def get_route_provider():
    return routing.route_from_shop


def _profile_from_token(db: Session, token: Optional[str]) -> Optional[models.Profile]:
    payload = auth.verify_token(token) if token else None
    if not payload or not payload.get("sub"):
        return None

    user = db.query(models.User).filter(models.User.id == payload["sub"]).first()
    if not user:
        return None
    return order_service.ensure_profile(db, user)


def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = authorization.replace("Bearer ", "")
    profile = _profile_from_token(db, token)
    if not profile:
        raise HTTPException(status_code=401, detail="Invalid token")

    return profile


@app.get("/")
def read_root():
    return {"message": "Food Ordering API is working!"}


@app.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running", "redis": redis_client.is_available()}


@app.get("/cache/info")
def get_cache_info():
    return redis_client.get_cache_info()


# ========== Auth ==========

def profile_response(profile: models.Profile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        full_name=profile.full_name,
        role=profile.role,
        phone=profile.phone,
        lat=profile.lat,
        lon=profile.lon,
        is_online=bool(profile.is_online),
        created_at=profile.created_at,
    )


@app.post("/register", response_model=ProfileResponse)
def register(user: UserCreate, db: Session = Depends(get_db)):
    logger.info(f"Registering user {user.email}")

    db_user = db.query(models.User).filter(models.User.email == user.email).first()
    if db_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    db_user = models.User(email=user.email, password=auth.get_password_hash(user.password))
    db.add(db_user)
    db.commit()
    db.refresh(db_user)

    profile = order_service.ensure_profile(db, db_user, full_name=user.full_name, phone=user.phone)
    return profile_response(profile)


@app.post("/login")
def login(user: UserLogin, db: Session = Depends(get_db)):
    db_user = auth.authenticate_user(db, user.email, user.password)
    if not db_user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")

    profile = order_service.ensure_profile(db, db_user)
    access_token = auth.create_access_token(data={"sub": db_user.id, "role": profile.role})

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": profile_response(profile),
    }


@app.get("/me", response_model=ProfileResponse)
def get_current_user_info(current_user: models.Profile = Depends(get_current_user)):
    return profile_response(current_user)


# ========== Profiles ==========

@app.put("/profiles/{profile_id}/location", response_model=ProfileResponse)
def update_location(profile_id: str, location: LocationUpdate, db: Session = Depends(get_db),
                    current_user: models.Profile = Depends(get_current_user)):
    profile = order_service.update_location(db, current_user, profile_id, location.lat, location.lon)
    return profile_response(profile)


@app.put("/profiles/{profile_id}/online", response_model=ProfileResponse)
def update_online(profile_id: str, online: OnlineUpdate, db: Session = Depends(get_db),
                  current_user: models.Profile = Depends(get_current_user)):
    profile = order_service.set_online(db, current_user, profile_id, online.is_online)
    return profile_response(profile)


@app.put("/profiles/{profile_id}/role", response_model=ProfileResponse)
def update_role(profile_id: str, role: RoleUpdate, db: Session = Depends(get_db),
                current_user: models.Profile = Depends(get_current_user)):
    profile = order_service.change_role(db, current_user, profile_id, role.role)
    return profile_response(profile)


# ========== Menu ==========

def menu_item_response(item: models.MenuItem) -> MenuItemResponse:
    return MenuItemResponse(
        id=item.id,
        name=item.name,
        description=item.description,
        price=float(item.price),
        image_url=item.image_url,
        category=item.category,
        preparation_time_minutes=item.preparation_time_minutes,
        is_available=bool(item.is_available),
        is_deleted=bool(item.is_deleted),
    )


@app.get("/menu", response_model=List[MenuItemResponse])
def get_menu(db: Session = Depends(get_db)):
    cached_menu = redis_client.get_cached_menu()
    if cached_menu:
        return [MenuItemResponse(**item) for item in cached_menu]

    items = [menu_item_response(item) for item in order_service.list_menu(db)]
    redis_client.cache_menu([item.dict() for item in items])
    return items


@app.get("/menu/all", response_model=List[MenuItemResponse])
def get_full_menu(db: Session = Depends(get_db), current_user: models.Profile = Depends(get_current_user)):
    if current_user.role != "owner":
        raise HTTPException(status_code=403, detail="Only the owner can view unavailable items")
    return [menu_item_response(item) for item in order_service.list_menu(db, include_unavailable=True)]


@app.post("/menu", response_model=MenuItemResponse)
def create_menu_item(item: MenuItemCreate, db: Session = Depends(get_db),
                     current_user: models.Profile = Depends(get_current_user)):
    try:
        db_item = order_service.create_menu_item(db, current_user, item.dict())
    except OrderError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating menu item: {e}")
        raise HTTPException(status_code=500, detail="Error creating menu item")
    return menu_item_response(db_item)


@app.put("/menu/{item_id}", response_model=MenuItemResponse)
def update_menu_item(item_id: int, item: MenuItemCreate, db: Session = Depends(get_db),
                     current_user: models.Profile = Depends(get_current_user)):
    try:
        db_item = order_service.update_menu_item(db, current_user, item_id, item.dict())
    except OrderError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating menu item {item_id}: {e}")
        raise HTTPException(status_code=500, detail="Error updating menu item")
    return menu_item_response(db_item)


@app.put("/menu/{item_id}/availability", response_model=MenuItemResponse)
def update_availability(item_id: int, availability: AvailabilityUpdate, db: Session = Depends(get_db),
                        current_user: models.Profile = Depends(get_current_user)):
    db_item = order_service.set_availability(db, current_user, item_id, availability.is_available)
    return menu_item_response(db_item)


@app.delete("/menu/{item_id}", response_model=MenuItemDeleteResponse)
def delete_menu_item(item_id: int, db: Session = Depends(get_db),
                     current_user: models.Profile = Depends(get_current_user)):
    hard_deleted = order_service.delete_menu_item(db, current_user, item_id)
    message = "Menu item deleted" if hard_deleted else "Menu item has orders and was hidden instead"
    return MenuItemDeleteResponse(id=item_id, hard_deleted=hard_deleted, message=message)


# ========== Orders ==========

def get_order_response(order: models.Order) -> OrderResponse:
    items = [
        OrderItemResponse(
            id=item.id,
            menu_item_id=item.menu_item_id,
            menu_item_name=item.menu_item.name if item.menu_item else "Unknown",
            quantity=item.quantity,
            price=float(item.price),
        )
        for item in order.items
    ]

    return OrderResponse(
        id=order.id,
        customer_id=order.customer_id,
        customer_name=order.customer.full_name if order.customer else None,
        delivery_boy_id=order.delivery_boy_id,
        delivery_boy_name=order.delivery_boy.full_name if order.delivery_boy else None,
        status=order.status,
        order_type=order.order_type,
        total_price=float(order.total_price),
        house_no=order.house_no or "",
        building_no=order.building_no,
        landmark=order.landmark,
        customer_phone=order.customer_phone or "",
        customer_lat=order.customer_lat,
        customer_lon=order.customer_lon,
        estimated_prep_time=order.estimated_prep_time,
        estimated_delivery_time=order.estimated_delivery_time,
        remaining_prep_minutes=remaining_minutes(order.estimated_prep_time, order.created_at),
        remaining_delivery_minutes=remaining_minutes(order.estimated_delivery_time, order.created_at),
        next_statuses=[s.value for s in next_statuses(order.order_type, order.status)],
        created_at=order.created_at,
        items=items,
    )


@app.post("/orders", response_model=OrderResponse)
@rate_limit(max_requests=10, window=60, key_prefix="rate_limit:orders")
async def create_order(request: Request, order: OrderCreate, db: Session = Depends(get_db),
                       current_user: models.Profile = Depends(get_current_user),
                       route_provider=Depends(get_route_provider)):
    try:
        db_order = await run_in_threadpool(
            order_service.create_order, db, current_user, order, route_provider=route_provider
        )
    except OrderError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating order for {current_user.id}: {e}")
        raise HTTPException(status_code=500, detail="Error creating order")
    return get_order_response(db_order)


@app.get("/orders", response_model=List[OrderResponse])
def get_orders(db: Session = Depends(get_db), current_user: models.Profile = Depends(get_current_user)):
    return [get_order_response(order) for order in order_service.visible_orders(db, current_user)]


@app.get("/orders/available", response_model=List[OrderResponse])
def get_available_orders(db: Session = Depends(get_db), current_user: models.Profile = Depends(get_current_user)):
    return [get_order_response(order) for order in order_service.available_orders(db, current_user)]


@app.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: int, db: Session = Depends(get_db), current_user: models.Profile = Depends(get_current_user)):
    return get_order_response(order_service.get_order_for(db, current_user, order_id))


@app.put("/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(order_id: int, update: StatusUpdate, db: Session = Depends(get_db),
                        current_user: models.Profile = Depends(get_current_user)):
    db_order = order_service.advance_status(db, order_id, current_user, update.status)
    return get_order_response(db_order)


@app.post("/orders/{order_id}/claim", response_model=OrderResponse)
def claim_order(order_id: int, db: Session = Depends(get_db), current_user: models.Profile = Depends(get_current_user)):
    db_order = order_service.claim_order(db, order_id, current_user.id)
    return get_order_response(db_order)


# ========== Ratings ==========

def rating_response(rating: models.OrderRating) -> RatingResponse:
    return RatingResponse(
        id=rating.id,
        order_id=rating.order_id,
        customer_id=rating.customer_id,
        customer_name=rating.customer.full_name if rating.customer else None,
        rating=rating.rating,
        review_message=rating.review_message,
        improvement_suggestion=rating.improvement_suggestion,
        created_at=rating.created_at,
    )


@app.post("/orders/{order_id}/rating", response_model=RatingResponse)
@rate_limit(max_requests=5, window=60, key_prefix="rate_limit:ratings")
async def submit_rating(request: Request, order_id: int, rating: RatingCreate, db: Session = Depends(get_db),
                        current_user: models.Profile = Depends(get_current_user)):
    db_rating = await run_in_threadpool(
        order_service.submit_rating,
        db, order_id, current_user.id, rating.rating, rating.review_message, rating.improvement_suggestion,
    )
    return rating_response(db_rating)


@app.put("/orders/{order_id}/rating", response_model=RatingResponse)
def update_rating(order_id: int, rating: RatingCreate, db: Session = Depends(get_db),
                  current_user: models.Profile = Depends(get_current_user)):
    db_rating = order_service.update_rating(
        db, order_id, current_user.id, rating.rating, rating.review_message, rating.improvement_suggestion
    )
    return rating_response(db_rating)


@app.get("/ratings", response_model=List[RatingResponse])
def get_ratings(db: Session = Depends(get_db), current_user: models.Profile = Depends(get_current_user)):
    return [rating_response(r) for r in order_service.list_ratings(db, current_user)]


@app.get("/ratings/stats", response_model=RatingStats)
def get_rating_stats(db: Session = Depends(get_db), current_user: models.Profile = Depends(get_current_user)):
    return RatingStats(**order_service.rating_stats(db, current_user))


# ========== Suggestions ==========

def suggestion_response(suggestion: models.CustomerSuggestion) -> SuggestionResponse:
    return SuggestionResponse(
        id=suggestion.id,
        customer_id=suggestion.customer_id,
        customer_name=suggestion.customer_name,
        suggestion_text=suggestion.suggestion_text,
        is_read=bool(suggestion.is_read),
        created_at=suggestion.created_at,
    )


@app.post("/suggestions", response_model=SuggestionResponse)
def create_suggestion(suggestion: SuggestionCreate, db: Session = Depends(get_db),
                      current_user: models.Profile = Depends(get_current_user)):
    return suggestion_response(order_service.create_suggestion(db, current_user, suggestion.suggestion_text))


@app.get("/suggestions", response_model=List[SuggestionResponse])
def get_suggestions(unread_only: bool = False, db: Session = Depends(get_db),
                    current_user: models.Profile = Depends(get_current_user)):
    return [suggestion_response(s) for s in order_service.list_suggestions(db, current_user, unread_only)]


@app.put("/suggestions/{suggestion_id}/read", response_model=SuggestionResponse)
def mark_suggestion_read(suggestion_id: int, db: Session = Depends(get_db),
                         current_user: models.Profile = Depends(get_current_user)):
    return suggestion_response(order_service.mark_suggestion_read(db, current_user, suggestion_id))


# ========== Change feed ==========

def _feed_subscription(token: Optional[str]):
    db = SessionLocal()
    try:
        profile = _profile_from_token(db, token)
        if profile is None:
            return None, []
        return profile.id, subscription_channels(profile)
    finally:
        db.close()


async def _relay_events(websocket: WebSocket, pubsub):
    while True:
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
        if message:
            await websocket.send_text(message["data"])


async def _wait_for_close(websocket: WebSocket):
    # clients never send anything; reading is how a hang-up is noticed
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/ws/orders")
async def orders_feed(websocket: WebSocket, token: Optional[str] = None):
    """Relays order and menu change events the caller may read.

    Without Redis the socket only sends the greeting and closes; clients then
    rely on polling every ``poll_interval`` seconds. With Redis the relay runs
    until either the client leaves or the subscription fails, and the
    subscription is always released.
    """
    profile_id, channels = await run_in_threadpool(_feed_subscription, token)

    if not channels:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    realtime = redis_client.is_available()
    await websocket.send_json({
        "type": "hello",
        "channels": channels,
        "realtime": realtime,
        "poll_interval": POLL_INTERVAL_SECONDS,
    })
    if not realtime:
        await websocket.close()
        return

    client = aioredis.Redis(host=redis_client.redis_host, port=redis_client.redis_port, decode_responses=True)
    pubsub = client.pubsub()
    tasks = []
    try:
        await pubsub.subscribe(*channels)
        tasks = [
            asyncio.create_task(_relay_events(websocket, pubsub)),
            asyncio.create_task(_wait_for_close(websocket)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()
        logger.info(f"Change feed closed for {profile_id}")
    except WebSocketDisconnect:
        logger.info(f"Change feed closed for {profile_id}")
    except redis.RedisError as e:
        logger.warning(f"Change feed for {profile_id} lost Redis: {e}")
        await websocket.close()
    except (RuntimeError, OSError) as e:
        logger.warning(f"Change feed for {profile_id} could not reach the client: {e}")
    finally:
        for task in tasks:
            task.cancel()
        await pubsub.aclose()
        await client.aclose()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
