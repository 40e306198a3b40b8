# Seed data: Users (students, staff, admin), already verified

from ..config import INSTITUTION_EMAIL_DOMAIN, new_id, now_utc
from ..security import hash_password

# ---------------------------------------------------------------------------
# Raw user definitions
# ---------------------------------------------------------------------------
USERS = [
    # ---- Students (2) ----
    {"key": "student1", "password": "student123", "name": "Harpreet Kaur",
     "email": f"harpreet.kaur@{INSTITUTION_EMAIL_DOMAIN}", "phone": "9876543210", "role": "student",
     "student_details": {"year": "3", "university_roll_number": "2104512", "branch": "CSE",
                         "mobile_number": "9876543210"}},

    {"key": "student2", "password": "student123", "name": "Arjun Mehta",
     "email": f"arjun.mehta@{INSTITUTION_EMAIL_DOMAIN}", "phone": "9876543211", "role": "student",
     "student_details": {"year": "2", "university_roll_number": "2204877", "branch": "ECE",
                         "mobile_number": "9876543211"}},

    # ---- Staff (1) ----
    {"key": "staff", "password": "staff123", "name": "Dr. Gurpreet Singh, Dean Student Welfare",
     "email": f"dsw@{INSTITUTION_EMAIL_DOMAIN}", "phone": "9988776655", "role": "staff",
     "student_details": {}},

    # ---- Admin (1) ----
    {"key": "admin", "password": "admin123", "name": "Grievance Cell Administrator",
     "email": f"grievance.cell@{INSTITUTION_EMAIL_DOMAIN}", "phone": "9988776601", "role": "admin",
     "student_details": {}},
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
def import_users(db) -> dict:
    """Insert seed users into MongoDB. Returns {key: _id} mapping."""
    user_ids = {}
    for u in USERS:
        uid = new_id()
        db.users.insert_one({
            "_id": uid,
            "email": u["email"],
            "phone": u["phone"],
            "hashed_password": hash_password(u["password"]),
            "name": u["name"],
            "role": u["role"],
            "is_email_verified": True,
            "is_phone_verified": True,
            "student_details": dict(u["student_details"]),
            "created_at": now_utc(),
            "updated_at": now_utc(),
        })
        user_ids[u["key"]] = uid
    return user_ids
