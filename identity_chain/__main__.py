from identity_chain.servers.http_server import start

if __name__ == '__main__':
    start()
