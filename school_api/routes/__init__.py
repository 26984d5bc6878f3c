from . import admin, auth, health, student, teacher

routers = [health.router, auth.router, admin.router, teacher.router, student.router]
