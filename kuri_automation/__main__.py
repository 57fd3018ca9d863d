from kuri_automation.scheduler.main import run


if __name__ == "__main__":
    run()
