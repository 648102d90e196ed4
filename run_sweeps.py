"""
Script to run the periodic maintenance sweeps
Schedule it (cron, Railway cron job) every few minutes
"""
from app import create_app
from utils.maintenance import run_all


def run_sweeps():
    """Run every maintenance sweep once"""
    app = create_app()

    with app.app_context():
        summary = run_all()

        print("\n" + "="*50)
        print("MAINTENANCE SWEEP")
        print("="*50)
        for name, count in summary.items():
            print(f"{name}: {count}")
        print("="*50)


if __name__ == '__main__':
    run_sweeps()
