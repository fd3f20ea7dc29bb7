from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Optional
from decimal import Decimal


class ProfileBase(BaseModel):
    full_name: str
    email: str


class ProfileCreate(ProfileBase):
    password: str = Field(..., min_length=6)


class ProfileConfig(ProfileBase):
    id: int
    role: str
    created_at: datetime

    model_config = {
        "from_attributes": True
    }


class Token(BaseModel):
    access_token: str
    token_type: str
    role: str
    redirect_to: str


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)


class CategoryConfig(CategoryCreate):
    id: int

    model_config = {
        "from_attributes": True
    }


class BookBase(BaseModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    isbn: Optional[str] = None
    category_id: Optional[int] = None
    cover_image: Optional[str] = None
    total_copies: int = Field(10, ge=1)


class BookCreate(BookBase):
    pass


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    isbn: Optional[str] = None
    category_id: Optional[int] = None
    cover_image: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=1)

    @field_validator("title", "author", "total_copies")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class BookConfig(BookBase):
    id: int
    status: str
    category_name: Optional[str] = None

    model_config = {
        "from_attributes": True
    }


class BookWithAvailability(BookConfig):
    borrowed_count: int
    available_copies: int


class BookSummary(BaseModel):
    id: int
    title: str
    author: str
    cover_image: Optional[str] = None

    model_config = {
        "from_attributes": True
    }


class RequesterSummary(BaseModel):
    id: int
    full_name: str
    email: str

    model_config = {
        "from_attributes": True
    }


class BookRequestCreate(BaseModel):
    book_id: int


class BookRequestConfig(BaseModel):
    id: int
    book_id: int
    user_id: int
    status: str
    requested_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None
    book: BookSummary

    model_config = {
        "from_attributes": True
    }


class BookRequestWithUser(BookRequestConfig):
    user: RequesterSummary


class ApproveRequest(BaseModel):
    due_date: Optional[datetime] = None


class BorrowedBookConfig(BaseModel):
    id: int
    user_id: int
    book_id: int
    request_id: Optional[int] = None
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    daily_fine_rate: Decimal
    total_fine: Decimal
    due_fee: Decimal
    fee_paid: bool
    last_fine_update: Optional[datetime] = None
    book: BookSummary

    model_config = {
        "from_attributes": True
    }


class LoanStatus(BorrowedBookConfig):
    """A loan with its fine recomputed at read time."""
    current_fine: Decimal
    days_overdue: int
    days_remaining: int
    is_overdue: bool


class LoanStatusWithUser(LoanStatus):
    user: RequesterSummary


class ReturnRequestConfig(BaseModel):
    id: int
    borrowed_book_id: int
    user_id: int
    status: str
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[int] = None
    borrowed_book: BorrowedBookConfig

    model_config = {
        "from_attributes": True
    }


class ReturnRequestWithUser(ReturnRequestConfig):
    user: RequesterSummary


class AdminStats(BaseModel):
    total_books: int
    total_categories: int
    total_users: int
    borrowed_count: int
    total_fees: Decimal


class LatestChange(BaseModel):
    table: str
    event: str
    row_id: Optional[int] = None
    occurred_at: datetime

    model_config = {
        "from_attributes": True
    }


class NotificationState(BaseModel):
    unread: int
    latest: Optional[LatestChange] = None


class ReminderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    user_name: str = Field(..., alias="userName")
    book_title: str = Field(..., alias="bookTitle")
    due_date: str = Field(..., alias="dueDate")
    days_remaining: int = Field(..., alias="daysRemaining")


class Feedback(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    message: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
