# routes/__init__.py
from fastapi import APIRouter

import routes.health as health_routes
import routes.uploads as uploads_routes

# chemins à la racine : ce sont ceux qu'utilise le client d'upload existant
api_router = APIRouter()
api_router.include_router(health_routes.router)
api_router.include_router(uploads_routes.router)
