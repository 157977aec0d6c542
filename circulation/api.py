import os
from datetime import datetime
from functools import lru_cache
from typing import Dict, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .config import settings
from .errors import (
    AlreadyResolved,
    AlreadyReturned,
    CirculationError,
    DuplicateRecord,
    InvalidRecord,
    InvalidSetting,
    LimitExceeded,
    NotAvailable,
    NotFound,
    StoreConflict,
    StoreUnavailable,
)
from .library import Library
from .models import BookStatus, Role

app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version)

STATUS_BY_KIND: Dict[str, int] = {
    NotFound.kind: 404,
    NotAvailable.kind: 409,
    AlreadyReturned.kind: 409,
    AlreadyResolved.kind: 409,
    LimitExceeded.kind: 409,
    DuplicateRecord.kind: 409,
    StoreConflict.kind: 409,
    InvalidSetting.kind: 422,
    InvalidRecord.kind: 422,
    StoreUnavailable.kind: 503,
}


@lru_cache(maxsize=1)
def get_library() -> Library:
    """Library bound to LIBRARY_DB_FILE; tests override this dependency."""
    return Library(db_file=os.environ.get("LIBRARY_DB_FILE") or settings.database_file)


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    return JSONResponse(status_code=STATUS_BY_KIND.get(exc.kind, 400), content=exc.to_dict())


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Dependency guarding every mutating route."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    category: Optional[str] = None
    year: Optional[int] = None
    status: str


class BookCreateModel(BaseModel):
    title: str
    author: str
    category: Optional[str] = None
    year: Optional[int] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    year: Optional[int] = None


class UserModel(BaseModel):
    id: int
    name: str
    email: str
    role: str


class UserCreateModel(BaseModel):
    name: str
    email: str
    password: str = ""
    role: str = Role.STUDENT.value


class UserUpdateModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None


class RoleModel(BaseModel):
    role: str


class LoanModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    borrow_date: str
    due_date: str
    return_date: Optional[str] = None
    fine: float
    fine_settled: bool
    user_name: Optional[str] = None
    book_title: Optional[str] = None


class BorrowModel(BaseModel):
    user_id: int
    book_id: int


class ReservationModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    reservation_date: str
    status: str
    user_name: Optional[str] = None
    book_title: Optional[str] = None


class ReserveModel(BaseModel):
    user_id: int
    book_id: int


class ResolveModel(BaseModel):
    outcome: str = Field(description="Completed or Canceled")


class StatsModel(BaseModel):
    total_books: int
    borrowed_books: int
    total_users: int
    unsettled_fines: float


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health check that touches the store."""
    stats = library.get_statistics()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "total_books": stats["total_books"],
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    q: Optional[str] = Query(None, description="Match title, author or category"),
    status: Optional[BookStatus] = Query(None, description="Available or Borrowed"),
    library: Library = Depends(get_library),
):
    """List the catalog ordered by title, optionally searched and filtered."""
    if q:
        books = library.search_books(q)
        if status is not None:
            books = [b for b in books if b.status is status]
    else:
        books = library.list_books(status)
    return [BookModel(**b.to_dict()) for b in books]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, library: Library = Depends(get_library)):
    return BookModel(**library.get_book(book_id).to_dict())


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    book = library.add_book(payload.title, payload.author, payload.category, payload.year)
    return BookModel(**book.to_dict())


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: int, update: BookUpdateModel, library: Library = Depends(get_library)):
    book = library.update_book(book_id, **update.model_dump(exclude_none=True))
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int, library: Library = Depends(get_library)):
    if not library.remove_book(book_id):
        raise NotFound(f"Book {book_id} not found.")
    return {"message": "Book removed."}


# --- Users ---
@app.get("/users", response_model=List[UserModel])
def get_users(library: Library = Depends(get_library)):
    return [UserModel(**u.to_dict()) for u in library.list_users()]


@app.get("/users/{user_id}", response_model=UserModel)
def get_user(user_id: int, library: Library = Depends(get_library)):
    return UserModel(**library.get_user(user_id).to_dict())


@app.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_user(payload: UserCreateModel, library: Library = Depends(get_library)):
    user = library.add_user(payload.name, payload.email, payload.password, payload.role)
    return UserModel(**user.to_dict())


@app.put("/users/{user_id}", response_model=UserModel, dependencies=[Depends(get_api_key)])
def update_user(user_id: int, update: UserUpdateModel, library: Library = Depends(get_library)):
    user = library.update_user(user_id, **update.model_dump(exclude_none=True))
    return UserModel(**user.to_dict())


@app.put("/users/{user_id}/role", response_model=UserModel, dependencies=[Depends(get_api_key)])
def set_user_role(user_id: int, payload: RoleModel, library: Library = Depends(get_library)):
    return UserModel(**library.set_role(user_id, payload.role).to_dict())


@app.delete("/users/{user_id}", dependencies=[Depends(get_api_key)])
def delete_user(user_id: int, library: Library = Depends(get_library)):
    library.remove_user(user_id)
    return {"message": "User removed."}


# --- Loans & fines ---
@app.get("/loans", response_model=List[LoanModel])
def get_loans(
    open: bool = Query(False, description="Only open loans, soonest due first"),
    library: Library = Depends(get_library),
):
    loans = library.list_open_loans() if open else library.list_loans()
    return [LoanModel(**loan.to_dict()) for loan in loans]


@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def borrow(payload: BorrowModel, library: Library = Depends(get_library)):
    return LoanModel(**library.borrow(payload.user_id, payload.book_id).to_dict())


@app.post("/loans/{loan_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def return_loan(loan_id: int, library: Library = Depends(get_library)):
    return LoanModel(**library.return_loan(loan_id).to_dict())


@app.post("/loans/{loan_id}/settle", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def settle_fine(loan_id: int, library: Library = Depends(get_library)):
    return LoanModel(**library.settle_fine(loan_id).to_dict())


@app.get("/fines", response_model=List[LoanModel])
def get_fines(unsettled: bool = Query(False), library: Library = Depends(get_library)):
    return [LoanModel(**loan.to_dict()) for loan in library.list_fines(unsettled_only=unsettled)]


# --- Reservations ---
@app.get("/reservations", response_model=List[ReservationModel])
def get_reservations(
    book_id: Optional[int] = Query(None, description="Only pending reservations of this book, oldest first"),
    library: Library = Depends(get_library),
):
    if book_id is not None:
        reservations = library.list_book_reservations(book_id)
    else:
        reservations = library.list_reservations()
    return [ReservationModel(**r.to_dict()) for r in reservations]


@app.post("/reservations", response_model=ReservationModel, status_code=201, dependencies=[Depends(get_api_key)])
def reserve(payload: ReserveModel, library: Library = Depends(get_library)):
    return ReservationModel(**library.reserve(payload.user_id, payload.book_id).to_dict())


@app.post(
    "/reservations/{reservation_id}/resolve",
    response_model=ReservationModel,
    dependencies=[Depends(get_api_key)],
)
def resolve_reservation(reservation_id: int, payload: ResolveModel, library: Library = Depends(get_library)):
    return ReservationModel(**library.resolve_reservation(reservation_id, payload.outcome).to_dict())


# --- Settings, stats, backup ---
@app.get("/settings")
def get_settings(library: Library = Depends(get_library)) -> Dict[str, str]:
    return library.get_settings()


@app.put("/settings", dependencies=[Depends(get_api_key)])
def update_settings(updates: Dict[str, Union[str, int, float]], library: Library = Depends(get_library)):
    return library.update_settings(updates).to_dict()


@app.get("/stats", response_model=StatsModel)
def get_stats(library: Library = Depends(get_library)):
    return StatsModel(**library.get_statistics())


@app.post("/backup", dependencies=[Depends(get_api_key)])
def create_backup(library: Library = Depends(get_library)):
    """Back up to the configured location; callers cannot choose the target path."""
    target = library.backup()
    return {"message": "Backup created.", "path": str(target)}
