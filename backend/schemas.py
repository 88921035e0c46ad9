from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, validator

from order_lifecycle import OrderStatus, OrderType, UserRole


class UserCreate(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None
    phone: Optional[str] = None

    @validator("email")
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        if len(v) > 255:
            raise ValueError("Email cannot exceed 255 characters")
        return v

    @validator("password")
    def validate_password(cls, v: str) -> str:
        if not v:
            raise ValueError("Password cannot be empty")
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


class UserLogin(BaseModel):
    email: str
    password: str


class ProfileResponse(BaseModel):
    id: str
    full_name: Optional[str] = None
    role: str
    phone: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    is_online: bool
    created_at: Optional[datetime] = None


class LocationUpdate(BaseModel):
    lat: float
    lon: float

    @validator("lat")
    def validate_lat(cls, v: float) -> float:
        if v < -90 or v > 90:
            raise ValueError("Latitude must be between -90 and 90")
        return v

    @validator("lon")
    def validate_lon(cls, v: float) -> float:
        if v < -180 or v > 180:
            raise ValueError("Longitude must be between -180 and 180")
        return v


class OnlineUpdate(BaseModel):
    is_online: bool


class RoleUpdate(BaseModel):
    role: UserRole


class MenuItemCreate(BaseModel):
    name: str
    description: Optional[str] = None
    price: float
    image_url: Optional[str] = None
    category: Optional[str] = None
    preparation_time_minutes: int = 15
    is_available: bool = True

    @validator("name")
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Item name cannot be empty")
        if len(v) > 100:
            raise ValueError("Item name cannot exceed 100 characters")
        return v.strip()

    @validator("price")
    def validate_price(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Price cannot be negative")
        if v > 1000000:
            raise ValueError("Price is too high")
        return round(v, 2)

    @validator("preparation_time_minutes")
    def validate_prep_time(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Preparation time must be greater than 0")
        if v > 600:
            raise ValueError("Preparation time cannot exceed 600 minutes")
        return v


class MenuItemResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: float
    image_url: Optional[str] = None
    category: Optional[str] = None
    preparation_time_minutes: Optional[int] = None
    is_available: bool
    is_deleted: bool = False


class AvailabilityUpdate(BaseModel):
    is_available: bool


class MenuItemDeleteResponse(BaseModel):
    id: int
    hard_deleted: bool
    message: str


class CartLine(BaseModel):
    menu_item_id: int
    quantity: int

    @validator("quantity")
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v


class OrderCreate(BaseModel):
    items: List[CartLine]
    order_type: OrderType = OrderType.DELIVERY
    house_no: Optional[str] = None
    building_no: Optional[str] = None
    landmark: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_lat: Optional[float] = None
    customer_lon: Optional[float] = None


class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: int
    menu_item_name: str
    quantity: int
    price: float


class OrderResponse(BaseModel):
    id: int
    customer_id: str
    customer_name: Optional[str] = None
    delivery_boy_id: Optional[str] = None
    delivery_boy_name: Optional[str] = None
    status: str
    order_type: str
    total_price: float
    house_no: str
    building_no: Optional[str] = None
    landmark: Optional[str] = None
    customer_phone: str
    customer_lat: Optional[float] = None
    customer_lon: Optional[float] = None
    estimated_prep_time: Optional[int] = None
    estimated_delivery_time: Optional[int] = None
    remaining_prep_minutes: Optional[int] = None
    remaining_delivery_minutes: Optional[int] = None
    next_statuses: List[str] = []
    created_at: Optional[datetime] = None
    items: List[OrderItemResponse]


class StatusUpdate(BaseModel):
    status: OrderStatus


class RatingCreate(BaseModel):
    rating: int
    review_message: Optional[str] = None
    improvement_suggestion: Optional[str] = None

    @validator("rating")
    def validate_rating(cls, v: int) -> int:
        if v < 1 or v > 5:
            raise ValueError("Rating must be between 1 and 5")
        return v


class RatingResponse(BaseModel):
    id: int
    order_id: int
    customer_id: str
    customer_name: Optional[str] = None
    rating: int
    review_message: Optional[str] = None
    improvement_suggestion: Optional[str] = None
    created_at: Optional[datetime] = None


class RatingStats(BaseModel):
    total_ratings: int
    average_rating: float
    five_star: int
    four_star: int
    three_star: int
    two_star: int
    one_star: int


class SuggestionCreate(BaseModel):
    suggestion_text: str

    @validator("suggestion_text")
    def validate_text(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Suggestion cannot be empty")
        if len(v) > 2000:
            raise ValueError("Suggestion cannot exceed 2000 characters")
        return v.strip()


class SuggestionResponse(BaseModel):
    id: int
    customer_id: str
    customer_name: Optional[str] = None
    suggestion_text: str
    is_read: bool
    created_at: Optional[datetime] = None
