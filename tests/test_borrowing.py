from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from library_service.auth import RequestContext
from library_service.borrowing import BorrowService, compute_fine, effective_status
from library_service.errors import ErrorKind
from library_service.models import Base, Book, Borrow, User
from library_service.repository import SqlLibraryRepository, create_library_engine

T0 = datetime(2024, 3, 1, 9, 30)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", future=True)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def locking_factory(tmp_path):
    # Same engine setup as the app; short busy timeout so a blocked writer fails fast
    engine = create_library_engine(
        f"sqlite:///{tmp_path / 'locked.db'}", connect_args={"timeout": 0.2}
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def service(session, clock):
    return BorrowService(SqlLibraryRepository(session), clock=clock)


def add_user(session, name="U1"):
    user = User(name=name, email=f"{name.lower()}@library.com", password_hash="x", role="member")
    session.add(user)
    session.commit()
    return RequestContext.from_user(user)


def add_book(session, isbn="978-0", copies=1, title="Dune"):
    book = Book(
        title=title,
        author="Frank Herbert",
        category="Fiction",
        isbn=isbn,
        total_copies=copies,
        available_copies=copies,
    )
    session.add(book)
    session.commit()
    return book.id


def copies_of(session, book_id):
    session.expire_all()
    return session.get(Book, book_id).available_copies


# ---- pure rules

def test_effective_status_derives_overdue_only_for_borrowed():
    due = T0 + timedelta(days=14)
    assert effective_status("borrowed", due, due) == "borrowed"
    assert effective_status("borrowed", due, due + timedelta(microseconds=1)) == "overdue"
    assert effective_status("overdue", due, T0) == "overdue"
    assert effective_status("returned", due, due + timedelta(days=30)) == "returned"


@pytest.mark.parametrize(
    "late, expected",
    [
        (timedelta(0), 0),
        (timedelta(days=-2), 0),
        (timedelta(milliseconds=1), 5),
        (timedelta(days=1), 5),
        (timedelta(days=1, seconds=1), 10),
        (timedelta(days=3), 15),
    ],
)
def test_compute_fine_rounds_partial_days_up(late, expected):
    due = T0 + timedelta(days=14)
    assert compute_fine(due, due + late, 5) == expected


# ---- borrow

def test_borrow_decrements_copies_and_creates_record(session, service):
    ctx = add_user(session)
    book_id = add_book(session, copies=3)

    outcome = service.borrow_book(ctx, book_id)

    assert outcome.ok
    borrow = outcome.value
    assert borrow.status == "borrowed"
    assert borrow.borrow_date == T0
    assert borrow.due_date == T0 + timedelta(days=14)
    assert borrow.return_date is None
    assert borrow.fine == 0
    assert copies_of(session, book_id) == 2
    assert session.query(Borrow).filter_by(user_id=ctx.user_id, book_id=book_id).count() == 1


def test_borrow_unknown_book_is_not_found(session, service):
    ctx = add_user(session)
    outcome = service.borrow_book(ctx, 999)
    assert outcome.error is ErrorKind.NOT_FOUND


def test_borrow_same_book_twice_is_conflict(session, service):
    ctx = add_user(session)
    book_id = add_book(session, copies=2)

    assert service.borrow_book(ctx, book_id).ok
    outcome = service.borrow_book(ctx, book_id)

    assert outcome.error is ErrorKind.CONFLICT
    assert copies_of(session, book_id) == 1


def test_overdue_record_still_blocks_second_borrow(session, service, clock):
    ctx = add_user(session)
    book_id = add_book(session, copies=2)
    service.borrow_book(ctx, book_id)
    clock.advance(days=20)
    service.sweep_overdue()

    assert service.borrow_book(ctx, book_id).error is ErrorKind.CONFLICT


def test_sixth_active_borrow_hits_limit(session, service):
    ctx = add_user(session)
    book_ids = [add_book(session, isbn=f"isbn-{i}", title=f"Book {i}") for i in range(6)]

    for book_id in book_ids[:5]:
        assert service.borrow_book(ctx, book_id).ok

    outcome = service.borrow_book(ctx, book_ids[5])
    assert outcome.error is ErrorKind.LIMIT_EXCEEDED
    assert copies_of(session, book_ids[5]) == 1


def test_limit_frees_up_after_return(session, service):
    ctx = add_user(session)
    book_ids = [add_book(session, isbn=f"isbn-{i}", title=f"Book {i}") for i in range(6)]
    for book_id in book_ids[:5]:
        service.borrow_book(ctx, book_id)

    assert service.return_book(ctx, book_ids[0]).ok
    assert service.borrow_book(ctx, book_ids[5]).ok


def test_last_copy_scenario_with_fine(session, service, clock):
    u1, u2, u3 = add_user(session, "U1"), add_user(session, "U2"), add_user(session, "U3")
    book_a = add_book(session, copies=2)

    assert service.borrow_book(u1, book_a).ok
    assert copies_of(session, book_a) == 1
    assert service.borrow_book(u2, book_a).ok
    assert copies_of(session, book_a) == 0
    assert service.borrow_book(u3, book_a).error is ErrorKind.UNAVAILABLE
    assert copies_of(session, book_a) == 0

    clock.advance(days=20)
    outcome = service.return_book(u1, book_a)

    assert outcome.ok
    assert outcome.value.fine == 30
    assert copies_of(session, book_a) == 1


def test_racing_borrow_cannot_overcommit(session_factory, session, clock):
    """Another transaction takes the last copy after our availability check."""
    winner, loser = add_user(session, "Winner"), add_user(session, "Loser")
    book_id = add_book(session, copies=1)

    def steal():
        other = session_factory()
        try:
            assert BorrowService(SqlLibraryRepository(other), clock=clock).borrow_book(winner, book_id).ok
        finally:
            other.close()

    class RacingRepository(SqlLibraryRepository):
        def find_book(self, book_id, for_update=False):
            book = super().find_book(book_id, for_update)
            steal()
            return book

    outcome = BorrowService(RacingRepository(session), clock=clock).borrow_book(loser, book_id)

    assert outcome.error is ErrorKind.UNAVAILABLE
    assert copies_of(session, book_id) == 0
    assert session.query(Borrow).filter_by(user_id=loser.user_id).count() == 0


def test_racing_duplicate_borrow_is_conflict(session_factory, session, clock):
    """The same user borrows the same book from another transaction mid-check."""
    ctx = add_user(session)
    book_id = add_book(session, copies=2)

    class RacingRepository(SqlLibraryRepository):
        def count_active_borrows(self, user_id):
            other = session_factory()
            try:
                assert BorrowService(SqlLibraryRepository(other), clock=clock).borrow_book(ctx, book_id).ok
            finally:
                other.close()
            return super().count_active_borrows(user_id)

    outcome = BorrowService(RacingRepository(session), clock=clock).borrow_book(ctx, book_id)

    assert outcome.error is ErrorKind.CONFLICT
    assert outcome.message == "You have already borrowed this book"
    assert copies_of(session, book_id) == 1
    assert session.query(Borrow).filter_by(user_id=ctx.user_id).count() == 1


def test_racing_borrow_cannot_pass_the_limit(locking_factory, clock):
    setup = locking_factory()
    ctx = add_user(setup)
    books = [add_book(setup, isbn=f"978-{i}", title=f"Book {i}") for i in range(6)]
    for book_id in books[:4]:
        assert BorrowService(SqlLibraryRepository(setup), clock=clock).borrow_book(ctx, book_id).ok
    setup.close()

    blocked = []

    class RacingRepository(SqlLibraryRepository):
        def count_active_borrows(self, user_id):
            other = locking_factory()
            try:
                BorrowService(SqlLibraryRepository(other), clock=clock).borrow_book(ctx, books[5])
            except OperationalError:
                blocked.append(books[5])
            finally:
                other.close()
            return super().count_active_borrows(user_id)

    session = locking_factory()
    try:
        outcome = BorrowService(RacingRepository(session), clock=clock).borrow_book(ctx, books[4])

        assert outcome.ok
        assert blocked == [books[5]]
        active = session.query(Borrow).filter(
            Borrow.user_id == ctx.user_id, Borrow.status == "borrowed"
        ).count()
        assert active == 5
    finally:
        session.close()


# ---- return

def test_return_on_time_has_no_fine(session, service, clock):
    ctx = add_user(session)
    book_id = add_book(session)
    service.borrow_book(ctx, book_id)
    clock.advance(days=14)

    outcome = service.return_book(ctx, book_id)

    assert outcome.ok
    borrow = outcome.value
    assert borrow.status == "returned"
    assert borrow.return_date == clock.now
    assert borrow.fine == 0
    assert copies_of(session, book_id) == 1


def test_return_one_day_late_fines_five(session, service, clock):
    ctx = add_user(session)
    book_id = add_book(session)
    service.borrow_book(ctx, book_id)
    clock.advance(days=15)

    assert service.return_book(ctx, book_id).value.fine == 5


def test_second_return_is_not_found(session, service):
    ctx = add_user(session)
    book_id = add_book(session)
    service.borrow_book(ctx, book_id)

    assert service.return_book(ctx, book_id).ok
    outcome = service.return_book(ctx, book_id)

    assert outcome.error is ErrorKind.NOT_FOUND
    assert copies_of(session, book_id) == 1


def test_return_with_full_shelf_is_rolled_back(session, service):
    ctx = add_user(session)
    book_id = add_book(session, copies=1)
    service.borrow_book(ctx, book_id)
    session.execute(update(Book).where(Book.id == book_id).values(available_copies=1))
    session.commit()

    outcome = service.return_book(ctx, book_id)

    assert outcome.error is ErrorKind.INTERNAL
    assert outcome.status_code == 500
    assert session.query(Borrow).filter_by(status="borrowed").count() == 1
    assert copies_of(session, book_id) == 1


def test_return_without_borrow_is_not_found(session, service):
    ctx = add_user(session)
    book_id = add_book(session)
    assert service.return_book(ctx, book_id).error is ErrorKind.NOT_FOUND


def test_repository_copy_updates_refuse_to_leave_bounds(session):
    repo = SqlLibraryRepository(session)
    book_id = add_book(session, copies=1)

    assert repo.update_book_copies(book_id, 1) is False
    assert repo.update_book_copies(book_id, -1) is True
    assert repo.update_book_copies(book_id, -1) is False
    repo.commit()
    assert copies_of(session, book_id) == 0


# ---- sweep and stats

def test_sweep_is_idempotent(session, service, clock):
    ctx = add_user(session)
    late, fresh = add_book(session, isbn="a"), add_book(session, isbn="b")
    service.borrow_book(ctx, late)
    clock.advance(days=10)
    service.borrow_book(ctx, fresh)
    clock.advance(days=5)

    assert service.sweep_overdue().value == 1
    assert service.sweep_overdue().value == 0

    session.expire_all()
    statuses = {b.book_id: b.status for b in session.query(Borrow)}
    assert statuses == {late: "overdue", fresh: "borrowed"}


def test_sweep_leaves_returned_records_alone(session, service, clock):
    ctx = add_user(session)
    book_id = add_book(session)
    service.borrow_book(ctx, book_id)
    clock.advance(days=30)
    service.return_book(ctx, book_id)

    assert service.sweep_overdue().value == 0


def test_stats_counts_lazy_overdue_and_fines(session, service, clock):
    u1, u2 = add_user(session, "U1"), add_user(session, "U2")
    a, b = add_book(session, isbn="a", copies=2), add_book(session, isbn="b")
    service.borrow_book(u1, a)
    service.borrow_book(u2, a)
    service.borrow_book(u1, b)
    clock.advance(days=17)
    service.return_book(u1, b)

    stats = service.stats().value

    assert stats == {
        "totalBorrows": 3,
        "activeBorrows": 2,
        "overdueBorrows": 2,
        "returnedBorrows": 1,
        "totalFines": 15,
    }


def test_list_for_user_filters_by_effective_status(session, service, clock):
    ctx = add_user(session)
    other = add_user(session, "Other")
    a, b = add_book(session, isbn="a", copies=2), add_book(session, isbn="b")
    service.borrow_book(ctx, a)
    service.borrow_book(other, a)
    clock.advance(days=15)
    service.borrow_book(ctx, b)

    overdue = service.list_for_user(ctx, status="overdue").value
    borrowed = service.list_for_user(ctx, status="borrowed").value
    everything = service.list_for_user(ctx, page=1, limit=1).value

    assert [x.book_id for x in overdue.items] == [a]
    assert [x.book_id for x in borrowed.items] == [b]
    assert everything.total == 2
    assert everything.total_pages == 2
    assert everything.items[0].book_id == b


def test_list_rejects_unknown_status(session, service):
    ctx = add_user(session)
    assert service.list_for_user(ctx, status="lost").error is ErrorKind.VALIDATION
    assert service.list_all(status="lost").error is ErrorKind.VALIDATION
