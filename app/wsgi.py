from app.polimaks import create_app

app = create_app()
