from lms_deploy.cli.main import app

app(prog_name="lms")
