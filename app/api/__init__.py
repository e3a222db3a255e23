from flask import Blueprint

bp = Blueprint('api', __name__, url_prefix='/api')

# Import routes at the bottom
from app.api import auth, company, users, deals, targets, commissions, settings, webhooks, health
