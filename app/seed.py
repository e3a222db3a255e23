import json

from flask import current_app

from app import db
from app.models import AppSetting, Company, User

DEFAULT_SETTINGS = {
    # key: [value, description, value_type]
    'CATEGORY_WEIGHTS': [json.dumps({'pipeline': 0.10, 'best_case': 0.25, 'commit': 0.75}),
                         'Probability applied to open deals per forecast category (JSON)', 'json'],
    'DEFAULT_CATEGORY_WEIGHT': ['0.10', 'Probability for open deals with an unknown category', 'float'],
    'CLOSED_WON_STAGES': [json.dumps(['closed won', 'closed_won', 'closedwon']),
                          'CRM stage names that count as closed-won (JSON, case-insensitive)', 'json'],
    'DEFAULT_PAYMENT_SCHEDULE': ['monthly', 'Payment schedule for targets that do not set one', 'string'],
}


def seed_data():
    """Populates the database with default settings and the administrator account."""
    # Seed App Settings
    for key, data in DEFAULT_SETTINGS.items():
        setting = AppSetting.query.filter_by(key=key).first()
        if not setting:  # Only add if it doesn't exist
            setting = AppSetting(key=key, value=data[0], description=data[1], value_type=data[2])
            db.session.add(setting)
            print(f'Seeding setting: {key}')

    # Seed the administrator
    admin_email = current_app.config['ADMIN_EMAIL'].lower()
    if not User.query.filter_by(email=admin_email).first():
        print(f'Seeding admin user {admin_email}...')
        company = Company(name='Default Company')
        db.session.add(company)
        db.session.flush()
        admin = User(email=admin_email, first_name='Admin', last_name='User', role='manager',
                     is_admin=True, is_manager=True, company_id=company.id)
        admin.set_password(current_app.config['ADMIN_PASSWORD'])
        db.session.add(admin)

    db.session.commit()
    print('Seeding complete.')
