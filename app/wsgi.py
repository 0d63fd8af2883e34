from app.botconsole import create_app

app = create_app()
