from app.rdms import create_app

app = create_app()
