# Worker agents and the coordinator
