from app.claimdesk import create_app

app = create_app()
