from warden.cli.main import app

app()
