import os

from dotenv import load_dotenv

from billing import create_app

load_dotenv()

app = create_app()

PORT = os.getenv("PORT", "5000")
if __name__ == '__main__':
    app.run(debug=os.getenv("FLASK_DEBUG") == "1", port=int(PORT))
