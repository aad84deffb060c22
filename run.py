from mediashrink.main import app, run  # noqa: F401

# Run the app
if __name__ == "__main__":
    run()
