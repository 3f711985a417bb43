from sqlalchemy.orm import Session

from ..models import Customer, MaintenanceTemplate


def seed_initial_data(db: Session) -> None:
    """Seed demo customers and a template if tables are empty."""
    if db.query(Customer).count() == 0:
        db.add_all(
            [
                Customer(name="Acme GmbH", email="it@acme.example"),
                Customer(name="Globex AG", email="ops@globex.example"),
                Customer(name="Initech", webhook_url="https://hooks.initech.example/maintenance"),
            ]
        )

    if db.query(MaintenanceTemplate).count() == 0:
        db.add(
            MaintenanceTemplate(
                name="Patch Tuesday",
                title="Monthly Windows patches",
                maintenance_type="patch",
                affected_systems="Windows servers",
                estimated_duration_minutes=120,
                require_approval=True,
                auto_proceed_on_no_response=True,
            )
        )

    db.commit()
