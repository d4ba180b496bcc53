from secure_hello.server import main

main()
