from fastapi import APIRouter

from jobhunter.api.routes import applications, credentials, emails, health, resumes, scrape_requests

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(scrape_requests.router, prefix="/scrape-requests", tags=["pipeline"])
api_router.include_router(credentials.router, prefix="/credentials", tags=["credentials"])
api_router.include_router(emails.router, prefix="/emails", tags=["emails"])
api_router.include_router(applications.router, prefix="/applications", tags=["emails"])
api_router.include_router(resumes.router, prefix="/resumes", tags=["resumes"])
