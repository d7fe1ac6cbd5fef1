from app.wellness_admin import create_app

app = create_app()
