# max_express_bot/__main__.py
"""python -m max_express_bot"""
from max_express_bot.transport.http_app import main

main()
