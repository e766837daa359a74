from amqpexchange.main import app

app(prog_name="amqp-exchange")
