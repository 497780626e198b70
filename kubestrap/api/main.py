from fastapi import FastAPI
from kubestrap.api.routes import status
from kubestrap.api.middleware import AuthMiddleware
from dotenv import load_dotenv

load_dotenv()
app = FastAPI(title="kubestrap")
app.add_middleware(AuthMiddleware)

app.include_router(status.router)
