import bcrypt

from app import create_app
from models import Book, School, User, db
from tenancy import TenantScope

app = create_app()

with app.app_context():
    # Reset the database
    db.drop_all()
    db.create_all()
    print("🔄 Database reset")

    schools = [
        {"name": "Northside High School", "slug": "northside"},
        {"name": "Riverside Middle School", "slug": "riverside"},
    ]
    for s in schools:
        db.session.add(School(name=s["name"], slug=s["slug"]))
    db.session.commit()
    northside = School.query.filter_by(slug="northside").first()
    riverside = School.query.filter_by(slug="riverside").first()
    print("✅ Schools inserted")

    # Insert Users
    users = [
        {"name": "Admin User", "email": "admin@example.com", "password": "admin123", "role": "admin", "school": northside},
        {"name": "Student One", "email": "student1@example.com", "password": "student123", "role": "student", "school": northside},
        {"name": "Student Two", "email": "student2@example.com", "password": "student123", "role": "student", "school": northside},
        {"name": "Riverside Admin", "email": "admin@riverside.example.com", "password": "admin123", "role": "admin", "school": riverside},
    ]

    for u in users:
        hashed_pw = bcrypt.hashpw(u["password"].encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        user = User(name=u["name"], email=u["email"], password=hashed_pw, role=u["role"], school_id=u["school"].school_id)
        db.session.add(user)

    db.session.commit()
    print("✅ Users inserted")

    # Insert Books
    books = [
        {"title": "Python Programming", "author": "John Zelle", "isbn": "9781590282410", "quantity": 5, "school": northside},
        {"title": "Flask Web Development", "author": "Miguel Grinberg", "isbn": "9781491991732", "quantity": 3, "school": northside},
        {"title": "Clean Code", "author": "Robert C. Martin", "isbn": "9780132350884", "quantity": 1, "school": northside},
        {"title": "Clean Code", "author": "Robert C. Martin", "isbn": "9780132350884", "quantity": 2, "school": riverside},
    ]

    for b in books:
        book = Book(
            title=b["title"],
            author=b["author"],
            isbn=b["isbn"],
            school_id=b["school"].school_id,
            quantity=b["quantity"],
            available=b["quantity"],
        )
        db.session.add(book)

    db.session.commit()
    print("✅ Books inserted")

    # Sample circulation: one loan, and a reservation queued behind it
    circulation = app.extensions['circulation']
    scope = TenantScope(northside.school_id)
    student = User.query.filter_by(email="student1@example.com").first()
    waiting = User.query.filter_by(email="student2@example.com").first()
    book = Book.query.filter_by(title="Clean Code", school_id=northside.school_id).first()

    loan = circulation.loans.borrow(scope, student.user_id, book.book_id)
    print(f"✅ Loan inserted: {student.name} borrowed '{book.title}' (due {loan.due_date:%Y-%m-%d})")

    reservation = circulation.reservations.reserve(scope, waiting.user_id, book.book_id)
    print(f"✅ Reservation inserted: {waiting.name} is waiting for '{book.title}'")
