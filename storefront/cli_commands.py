"""
Flask CLI commands for operations.

Commands:
- flask init-db: Create the database tables
- flask create-admin: Create a new admin user
- flask expire-quotes: Expire open quotes past their validity
- flask check-voucher-expiration: Deactivate expired vouchers
"""

import click
import re
from storefront.database import create_all, get_session
from storefront.models import User, UserRole


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create every table."""
        create_all()
        click.echo(click.style('✅ Tablas creadas', fg='green'))

    @app.cli.command('create-admin')
    @click.option('--email', prompt=True, help='Admin email address')
    @click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Admin password')
    @click.option('--name', default=None, help='Display name')
    def create_admin(email, password, name):
        """Create a new admin user for the back office."""
        db_session = get_session()

        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        if not re.match(email_pattern, email):
            click.echo(click.style('❌ Email inválido. Use formato: user@example.com', fg='red'))
            return

        if len(password) < 6:
            click.echo(click.style('❌ La contraseña debe tener al menos 6 caracteres.', fg='red'))
            return

        email = email.strip().lower()
        existing = db_session.query(User).filter_by(email=email).first()
        if existing:
            if existing.role == UserRole.ADMIN:
                click.echo(click.style(f'❌ Ya existe un administrador con el email: {email}', fg='red'))
                return
            existing.role = UserRole.ADMIN
            db_session.commit()
            click.echo(click.style(f'✅ Usuario {email} promovido a administrador', fg='green'))
            return

        try:
            admin = User(email=email, name=name, role=UserRole.ADMIN)
            admin.set_password(password)

            db_session.add(admin)
            db_session.commit()

            click.echo(click.style('\n✅ Administrador creado exitosamente!', fg='green', bold=True))
            click.echo(f'   Email: {email}')
            click.echo(f'   ID: {admin.id}')

        except Exception as e:
            db_session.rollback()
            click.echo(click.style(f'❌ Error al crear administrador: {str(e)}', fg='red'))

    @app.cli.command('expire-quotes')
    def expire_quotes_command():
        """Expire open quotes whose validity has passed."""
        from storefront.services.quote_service import expire_old_quotes
        count = expire_old_quotes(get_session())
        click.echo(click.style(f'✅ {count} presupuesto(s) caducados', fg='green'))

    @app.cli.command('check-voucher-expiration')
    def check_voucher_expiration_command():
        """Deactivate vouchers past their expiry date."""
        from storefront.services.voucher_service import deactivate_expired_vouchers
        count = deactivate_expired_vouchers(get_session())
        click.echo(click.style(f'✅ {count} bono(s) desactivados', fg='green'))
