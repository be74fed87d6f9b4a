import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


class CirculationScheduler:
    """Runs the periodic circulation sweeps inside an application context.

    The job bodies are plain methods so they can be invoked directly (from a
    test, a CLI or an external cron) without the scheduler running.
    """

    def __init__(self, app, services):
        self.app = app
        self.services = services
        self.scheduler = BackgroundScheduler(timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC'))

    def run_overdue_sweep(self):
        with self.app.app_context():
            try:
                results = self.services.loans.sweep_overdue_notifications()
                logger.info(
                    f"Reminders sent: {results['warnings']} warnings, "
                    f"{results['reminders']} reminders, {results['emails_sent']} emails"
                )
                return results
            except Exception as e:
                logger.error(f"Overdue reminder job failed: {str(e)}")
                return None

    def run_expiry_sweep(self):
        with self.app.app_context():
            try:
                expired = self.services.reservations.expire_stale()
                logger.info(f"{expired} expired reservations released")
                return expired
            except Exception as e:
                logger.error(f"Reservation expiry job failed: {str(e)}")
                return None

    def run_weekly_summary(self):
        with self.app.app_context():
            try:
                sent = self.services.loans.send_weekly_summary()
                logger.info(f"Weekly summary sent to {sent} admins")
                return sent
            except Exception as e:
                logger.error(f"Weekly summary job failed: {str(e)}")
                return None

    def run_notification_cleanup(self):
        with self.app.app_context():
            try:
                return self.services.notifications.purge_read(
                    self.app.config.get('NOTIFICATION_RETENTION_DAYS', 30)
                )
            except Exception as e:
                logger.error(f"Notification cleanup job failed: {str(e)}")
                return None

    def start(self):
        self.scheduler.add_job(self.run_overdue_sweep, 'cron', hour=9, minute=0,
                               id='overdue_sweep', replace_existing=True, coalesce=True, max_instances=1)
        self.scheduler.add_job(self.run_expiry_sweep, 'cron', hour=10, minute=0,
                               id='expiry_sweep', replace_existing=True, coalesce=True, max_instances=1)
        self.scheduler.add_job(self.run_weekly_summary, 'cron', day_of_week='mon', hour=8, minute=0,
                               id='weekly_summary', replace_existing=True, coalesce=True, max_instances=1)
        self.scheduler.add_job(self.run_notification_cleanup, 'interval', hours=1,
                               id='notification_cleanup', replace_existing=True, coalesce=True, max_instances=1)
        self.scheduler.start()
        logger.debug("Circulation scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
