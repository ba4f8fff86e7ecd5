from fieldsync import create_app

app = create_app()
