from sqlalchemy import Column, Numeric, Integer, String, Text, ForeignKey, DateTime, Boolean
from datetime import datetime, timezone
from library_portal.database import Base
from sqlalchemy.orm import relationship
import enum


def utcnow():
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    ADMIN = "admin"
    STUDENT = "student"


class RequestStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    DECLINED = "Declined"


class BookStatus(str, enum.Enum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"


# Profile model (one per account)
class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String(20), nullable=False, default=Role.STUDENT.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    borrowed_books = relationship("BorrowedBook", back_populates="user", foreign_keys="BorrowedBook.user_id")

    @property
    def is_admin(self):
        return self.role == Role.ADMIN.value


# Category model
class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)

    books = relationship("Book", back_populates="category")


# Book model
class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(Text, nullable=False)
    isbn = Column(String, nullable=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    cover_image = Column(String, nullable=True)
    total_copies = Column(Integer, nullable=False, default=10)
    # cached label, rewritten after approvals and returns
    status = Column(String(20), nullable=False, default=BookStatus.AVAILABLE.value)

    category = relationship("Category", back_populates="books")
    requests = relationship("BookRequest", back_populates="book", cascade="all, delete-orphan")
    borrowed_books = relationship("BorrowedBook", back_populates="book")

    @property
    def category_name(self):
        return self.category.name if self.category else None


class BookRequest(Base):
    __tablename__ = "book_requests"

    id = Column(Integer, primary_key=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    status = Column(String(20), nullable=False, default=RequestStatus.PENDING.value)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)

    book = relationship("Book", back_populates="requests")
    user = relationship("Profile", foreign_keys=[user_id])


# BorrowedBook model (the loan; return_date null means active)
class BorrowedBook(Base):
    __tablename__ = "borrowed_books"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("book_requests.id"), nullable=True)
    issue_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = Column(DateTime(timezone=True), nullable=False)
    return_date = Column(DateTime(timezone=True), nullable=True)
    daily_fine_rate = Column(Numeric(10, 2), nullable=False, default=10)
    total_fine = Column(Numeric(10, 2), nullable=False, default=0)
    due_fee = Column(Numeric(10, 2), nullable=False, default=0)
    fee_paid = Column(Boolean, nullable=False, default=False)
    last_fine_update = Column(DateTime(timezone=True), nullable=True)

    user = relationship("Profile", back_populates="borrowed_books", foreign_keys=[user_id])
    book = relationship("Book", back_populates="borrowed_books")
    return_requests = relationship("ReturnRequest", back_populates="borrowed_book", cascade="all, delete-orphan")


class ReturnRequest(Base):
    __tablename__ = "return_requests"

    id = Column(Integer, primary_key=True)
    borrowed_book_id = Column(Integer, ForeignKey("borrowed_books.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    status = Column(String(20), nullable=False, default=RequestStatus.PENDING.value)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)

    borrowed_book = relationship("BorrowedBook", back_populates="return_requests")
    user = relationship("Profile", foreign_keys=[user_id])
