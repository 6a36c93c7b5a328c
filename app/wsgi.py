from app.riskdocs import create_app

app = create_app()
