from moneymatched.cli import app

app()
